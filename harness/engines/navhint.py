# harness/engines/navhint.py
"""
Navigation-hinting engine (Periodic discipline)

Events accumulate in the Dataset; train() builds a small model:

- popularity per ranking: event counts per target item over a time window
- correlators per indicator: how often users who acted on item A with the
  primary indicator also acted on item B with that indicator

Query by item, by user (their recorded history), or neither (backfill by
popularity). Real-time model mutation ($set / $delete) is not supported.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import joblib
import pandas as pd
from pydantic import Field, model_validator

from harness.core.engine import Engine, EngineContext
from harness.core.types import Capability, Event
from harness.params.store import ParamsModel, parse_and_validate
from harness.utils.errors import ValidationError
from harness.utils.filesystem import FileSystem
from harness.utils.logger import logs


class Defaults:
    MAX_EVENTS_PER_EVENT_TYPE = 500
    NUM_RESULTS = 20
    MAX_CORRELATORS_PER_EVENT_TYPE = 50
    MAX_QUERY_EVENTS = 100
    BACKFILL_FIELD_NAME = "popRank"
    BACKFILL_TYPE = "popular"
    BACKFILL_DURATION = "3650 days"


# ============================================================
# algorithm sub-tree
# ============================================================
class IndicatorParams(ParamsModel):
    name: str
    max_items_per_user: Optional[int] = Field(default=None, alias="maxItemsPerUser")
    max_correlators_per_item: Optional[int] = Field(default=None, alias="maxCorrelatorsPerItem")
    min_llr: Optional[float] = Field(default=None, alias="minLLR")


class RankingParams(ParamsModel):
    name: Optional[str] = None
    type: Optional[str] = None
    event_names: Optional[List[str]] = Field(default=None, alias="eventNames")
    offset_date: Optional[str] = Field(default=None, alias="offsetDate")
    end_date: Optional[str] = Field(default=None, alias="endDate")
    duration: Optional[str] = None


class NavHintParams(ParamsModel):
    event_names: Optional[List[str]] = Field(default=None, alias="eventNames")
    indicators: Optional[List[IndicatorParams]] = None
    blacklist_events: Optional[List[str]] = Field(default=None, alias="blacklistEvents")
    max_events_per_event_type: Optional[int] = Field(default=None, alias="maxEventsPerEventType")
    max_correlators_per_event_type: Optional[int] = Field(
        default=None, alias="maxCorrelatorsPerEventType"
    )
    num: Optional[int] = Field(default=None, gt=0)
    return_self: Optional[bool] = Field(default=None, alias="returnSelf")
    rankings: Optional[List[RankingParams]] = None
    seed: Optional[int] = None

    @model_validator(mode="after")
    def _need_event_names_or_indicators(self) -> "NavHintParams":
        if not self.event_names and not self.indicators:
            raise ValueError('Must have either "eventNames" or "indicators" in algorithm parameters')
        return self


@dataclass(frozen=True)
class Ranking:
    name: str
    type: str
    event_names: List[str]
    duration: pd.Timedelta
    offset_date: Optional[pd.Timestamp]


@dataclass(frozen=True)
class NavHintSettings:
    """Resolved settings: every default filled in."""

    model_event_names: List[str]
    max_items_per_user: Dict[str, int]
    max_correlators_per_item: Dict[str, int]
    blacklist_events: List[str]
    limit: int
    return_self: bool
    rankings: List[Ranking]

    @classmethod
    def from_params(cls, p: NavHintParams) -> "NavHintSettings":
        max_events = p.max_events_per_event_type or Defaults.MAX_EVENTS_PER_EVENT_TYPE
        max_corr = p.max_correlators_per_event_type or Defaults.MAX_CORRELATORS_PER_EVENT_TYPE

        if p.event_names:
            names = list(p.event_names)
            per_user = {n: max_events for n in names}
            per_item = {n: max_corr for n in names}
        else:
            names = [i.name for i in p.indicators]
            per_user = {i.name: i.max_items_per_user or max_events for i in p.indicators}
            per_item = {i.name: i.max_correlators_per_item or max_corr for i in p.indicators}

        raw_rankings = p.rankings or [
            RankingParams(
                name=Defaults.BACKFILL_FIELD_NAME,
                type=Defaults.BACKFILL_TYPE,
                eventNames=names[:1],
                duration=Defaults.BACKFILL_DURATION,
            )
        ]

        # unique by type, first one wins
        rankings: List[Ranking] = []
        seen: set[str] = set()
        for r in raw_rankings:
            rtype = r.type or Defaults.BACKFILL_TYPE
            if rtype in seen:
                continue
            seen.add(rtype)
            rankings.append(
                Ranking(
                    name=r.name or f"{rtype}Rank",
                    type=rtype,
                    event_names=list(r.event_names or names[:1]),
                    duration=_parse_duration(r.duration or Defaults.BACKFILL_DURATION),
                    offset_date=_parse_date(r.offset_date),
                )
            )

        return cls(
            model_event_names=names,
            max_items_per_user=per_user,
            max_correlators_per_item=per_item,
            # None → block the primary event; [] → no blacklist
            blacklist_events=list(p.blacklist_events) if p.blacklist_events is not None else names[:1],
            limit=p.num or Defaults.NUM_RESULTS,
            return_self=bool(p.return_self),
            rankings=rankings,
        )


def _parse_duration(value: str) -> pd.Timedelta:
    try:
        return pd.Timedelta(value)
    except ValueError as e:
        raise ValidationError(
            f"bad ranking duration '{value}'", field="algorithm.rankings.duration"
        ) from e


def _parse_date(value: Optional[str]) -> Optional[pd.Timestamp]:
    if value is None:
        return None
    try:
        ts = pd.Timestamp(value)
    except ValueError as e:
        raise ValidationError(
            f"bad ranking offsetDate '{value}'", field="algorithm.rankings.offsetDate"
        ) from e
    return ts.tz_localize("UTC") if ts.tzinfo is None else ts


# ============================================================
# model
# ============================================================
@dataclass
class NavHintModel:
    # ranking name → {item: score}
    popularity: Dict[str, Dict[str, float]] = field(default_factory=dict)
    # indicator → {indicator item: [(primary item, count), ...]}
    correlators: Dict[str, Dict[str, List[tuple]]] = field(default_factory=dict)
    # user → {indicator: [items, most recent first]}
    history: Dict[str, Dict[str, List[str]]] = field(default_factory=dict)
    event_count: int = 0


class NavHintEngine(Engine):
    capabilities = frozenset({Capability.BATCH_TRAIN})

    MODEL_FILE = "model.joblib"

    def __init__(self, engine_id: str, ctx: EngineContext):
        super().__init__(engine_id, ctx)
        self.settings: NavHintSettings | None = None
        self._model_lock = threading.Lock()

    # --------------------------------------------------
    def init(self, params: Dict[str, Any]) -> None:
        p = parse_and_validate(
            params,
            NavHintParams,
            transform="algorithm",
            error_msg=f"Error in the algorithm part of the JSON config for engineId: {self.engine_id}",
        )
        settings = NavHintSettings.from_params(p)

        super().init(params)
        self.settings = settings

        if self.model is None:
            self._load_model()

        logs.info(
            f"[NavHint] {self.engine_id} init eventNames={settings.model_event_names} "
            f"limit={settings.limit} rankings={[(r.type, r.name) for r in settings.rankings]}"
        )

    def _load_model(self) -> None:
        path = self.model_dir / self.MODEL_FILE
        if path.exists():
            with self._model_lock:
                self.model = joblib.load(path)
            logs.info(f"[NavHint] {self.engine_id} model restored from {path}")

    # --------------------------------------------------
    def validate_event(self, event: Event) -> None:
        if event.event == "$delete":
            if event.entity_type in ("user", "model"):
                raise ValidationError(
                    f'Using $delete on "entityType": "{event.entity_type}" is not supported yet',
                    field="entityType",
                )
            raise ValidationError(
                f'Deleting unknown entityType "{event.entity_type}" is not supported',
                field="entityType",
            )
        super().validate_event(event)

    # --------------------------------------------------
    def train(self) -> NavHintModel:
        settings = self.settings
        df = self.dataset.to_frame()
        if not df.empty:
            df = df[df["targetEntityId"].notna()]

        model = NavHintModel(event_count=len(df))
        if df.empty:
            logs.warning(f"[NavHint] {self.engine_id} train on empty dataset")
            return model

        for ranking in settings.rankings:
            if self.cancel_requested.is_set():
                raise RuntimeError("training cancelled")
            model.popularity[ranking.name] = self._popularity(df, ranking)

        indicators = df[df["event"].isin(settings.model_event_names)]
        primary = settings.model_event_names[0]
        for name in settings.model_event_names:
            model.correlators[name] = self._correlators(
                indicators, primary, name, settings.max_correlators_per_item[name]
            )

        model.history = self._history(indicators, settings)
        logs.info(
            f"[NavHint] {self.engine_id} trained on {len(indicators)} indicator events, "
            f"{len(model.correlators.get(primary, {}))} primary items"
        )
        return model

    @staticmethod
    def _popularity(df: pd.DataFrame, ranking: Ranking) -> Dict[str, float]:
        events = df[df["event"].isin(ranking.event_names)]
        if events.empty:
            return {}
        end = ranking.offset_date if ranking.offset_date is not None else events["eventTime"].max()
        window = events[
            (events["eventTime"] > end - ranking.duration) & (events["eventTime"] <= end)
        ]
        counts = window.groupby("targetEntityId").size().sort_values(ascending=False)
        return {str(k): float(v) for k, v in counts.items()}

    @staticmethod
    def _correlators(
        df: pd.DataFrame, primary: str, indicator: str, max_per_item: int
    ) -> Dict[str, List[tuple]]:
        """
        For every item B seen with `indicator`: the primary items A that the
        same users acted on, with the number of shared users.
        """
        cols = ["entityId", "targetEntityId"]
        prim = df.loc[df["event"] == primary, cols].drop_duplicates()
        other = df.loc[df["event"] == indicator, cols].drop_duplicates()
        pairs = prim.merge(other, on="entityId", suffixes=("", "_other"))
        if indicator == primary:
            pairs = pairs[pairs["targetEntityId"] != pairs["targetEntityId_other"]]
        if pairs.empty:
            return {}

        counts = (
            pairs.groupby(["targetEntityId_other", "targetEntityId"])
            .size()
            .reset_index(name="n")
            .sort_values(
                ["targetEntityId_other", "n", "targetEntityId"],
                ascending=[True, False, True],
            )
        )
        out: Dict[str, List[tuple]] = {}
        for item, group in counts.groupby("targetEntityId_other", sort=False):
            top = group.head(max_per_item)
            out[str(item)] = list(zip(top["targetEntityId"].astype(str), top["n"].astype(float)))
        return out

    @staticmethod
    def _history(df: pd.DataFrame, settings: NavHintSettings) -> Dict[str, Dict[str, List[str]]]:
        history: Dict[str, Dict[str, List[str]]] = {}
        ordered = df.sort_values("eventTime", ascending=False)
        for (user, name), group in ordered.groupby(["entityId", "event"], sort=False):
            limit = settings.max_items_per_user.get(name, Defaults.MAX_QUERY_EVENTS)
            items = list(dict.fromkeys(group["targetEntityId"].astype(str)))[:limit]
            history.setdefault(str(user), {})[str(name)] = items
        return history

    def publish_model(self, model: NavHintModel) -> None:
        # the file on disk is replaced only once the dump completed
        FileSystem.safe_dump(self.model_dir / self.MODEL_FILE, lambda tmp: joblib.dump(model, tmp))
        with self._model_lock:
            self.model = model

    # --------------------------------------------------
    def query(self, query: Dict[str, Any]) -> Dict[str, Any]:
        settings = self.settings
        with self._model_lock:
            model = self.model
        if model is None:
            return {"result": []}

        num = query.get("num", settings.limit)
        if not isinstance(num, int) or num <= 0:
            raise ValidationError("num must be a positive integer", field="num")

        user = query.get("user")
        item = query.get("item")
        scores: Dict[str, float] = {}
        exclude: set[str] = set()

        seeds: Dict[str, List[str]] = {}
        if item is not None:
            seeds = {settings.model_event_names[0]: [str(item)]}
            if not settings.return_self:
                exclude.add(str(item))
        if user is not None:
            user_history = model.history.get(str(user), {})
            for name, items in user_history.items():
                seeds.setdefault(name, []).extend(items)
            for name in settings.blacklist_events:
                exclude.update(user_history.get(name, []))

        for name, items in seeds.items():
            correlators = model.correlators.get(name, {})
            for seed in items:
                for other, n in correlators.get(seed, []):
                    scores[other] = scores.get(other, 0.0) + n

        ranked = sorted(
            ((i, s) for i, s in scores.items() if i not in exclude),
            key=lambda kv: (-kv[1], kv[0]),
        )

        if len(ranked) < num:
            # backfill from the first ranking
            backfill = model.popularity.get(settings.rankings[0].name, {}) if settings.rankings else {}
            taken = {i for i, _ in ranked} | exclude
            for i, s in sorted(backfill.items(), key=lambda kv: (-kv[1], kv[0])):
                if len(ranked) >= num:
                    break
                if i not in taken:
                    ranked.append((i, float(s)))
                    taken.add(i)

        return {"result": [{"item": i, "score": s} for i, s in ranked[:num]]}

    def status(self) -> Dict[str, Any]:
        body = super().status()
        with self._model_lock:
            model = self.model
        body["modelEventCount"] = model.event_count if model is not None else None
        return body
