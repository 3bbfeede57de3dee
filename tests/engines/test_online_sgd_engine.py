# tests/engines/test_online_sgd_engine.py
from __future__ import annotations

import joblib
import pytest
from sklearn.linear_model import SGDRegressor

from harness.utils.errors import AlgorithmFailure, UnsupportedUpdate, ValidationError


def _params(engine_id="sgd", **algorithm):
    algo = {
        "features": ["x1", "x2"],
        "target": "y",
        "sgd": {"random_state": 0, "eta0": 0.01},
        "checkpointEvery": 5,
    }
    algo.update(algorithm)
    return {"engineId": engine_id, "engineFactory": "online_sgd", "algorithm": algo}


def _sample(i: int, with_target: bool = True):
    props = {"x1": float(i % 7), "x2": float(i % 3)}
    if with_target:
        props["y"] = 2.0 * props["x1"] - props["x2"] + 1.0
    return {"entityType": "sensor", "entityId": f"s{i}", "event": "reading", "properties": props}


@pytest.fixture
def sgd(admin):
    admin.create(_params())
    return admin


def test_is_continuous(sgd):
    status = sgd.status("sgd")

    assert status["discipline"] == "continuous"
    assert status["engine"]["samplesSeen"] == 0


def test_prediction_is_none_before_any_sample(sgd, router):
    assert router.query("sgd", {"properties": {"x1": 1, "x2": 2}}) == {"prediction": None}


def test_each_event_updates_the_model(sgd, router):
    for i in range(20):
        assert router.input("sgd", _sample(i))["update"] == "applied"

    prediction = router.query("sgd", {"properties": {"x1": 3, "x2": 1}})["prediction"]

    assert isinstance(prediction, float)
    assert sgd.status("sgd")["engine"]["samplesSeen"] == 20


def test_event_without_target_is_stored_but_not_learned(sgd, router):
    router.input("sgd", _sample(1, with_target=False))

    status = sgd.status("sgd")["engine"]
    assert status["datasetCount"] == 1
    assert status["samplesSeen"] == 0


@pytest.mark.parametrize(
    "props, field",
    [
        ({"x1": 1.0, "y": 3.0}, "properties.x2"),
        ({"x1": "a", "x2": 1.0, "y": 3.0}, "properties.x1"),
        ({"x1": 1.0, "x2": 1.0, "y": float("inf")}, "properties.y"),
    ],
)
def test_bad_sample_rejected_before_storage(sgd, router, props, field):
    with pytest.raises(ValidationError) as e:
        router.input("sgd", {"entityType": "sensor", "entityId": "s", "event": "reading", "properties": props})

    assert e.value.field == field
    assert sgd.status("sgd")["engine"]["datasetCount"] == 0


def test_query_needs_properties(sgd, router):
    with pytest.raises(ValidationError) as e:
        router.query("sgd", {})

    assert e.value.field == "properties"


def test_missing_features_rejected(admin):
    with pytest.raises(ValidationError) as e:
        admin.create(_params(features=[]))

    assert e.value.field == "algorithm.features"


def test_bad_sgd_parameter(admin):
    with pytest.raises(ValidationError) as e:
        admin.create(_params(sgd={"not_a_param": 1}))

    assert e.value.field == "algorithm.sgd"


def test_feature_change_is_unsupported(sgd):
    with pytest.raises(UnsupportedUpdate):
        sgd.update("sgd", _params(features=["x1"]))

    assert sgd.get("sgd").engine.cfg.features == ["x1", "x2"]


def test_hyper_parameter_update_keeps_learned_state(sgd, router):
    for i in range(3):
        router.input("sgd", _sample(i))

    sgd.update("sgd", _params(sgd={"random_state": 0, "eta0": 0.001}))

    engine = sgd.get("sgd").engine
    assert engine.samples_seen == 3
    assert engine.model.get_params()["eta0"] == 0.001


def test_hyper_parameter_left_out_of_update_returns_to_default(admin):
    admin.create(_params(sgd={"random_state": 0, "eta0": 0.05, "alpha": 0.01}))

    admin.update("sgd", _params(sgd={"random_state": 0}))

    params = admin.get("sgd").engine.model.get_params()
    defaults = SGDRegressor().get_params()
    assert params["alpha"] == defaults["alpha"]
    assert params["eta0"] == defaults["eta0"]
    assert params["random_state"] == 0


def test_failed_checkpoint_keeps_previous_file(sgd, router, tmp_path, monkeypatch):
    for i in range(5):
        router.input("sgd", _sample(i))
    checkpoint = tmp_path / "models" / "sgd" / "sgd.joblib"
    before = checkpoint.read_bytes()

    def torn_dump(value, filename):
        with open(filename, "wb") as f:
            f.write(before[:10])
        raise OSError("disk full")

    monkeypatch.setattr(joblib, "dump", torn_dump)
    for i in range(5, 9):
        router.input("sgd", _sample(i))
    with pytest.raises(AlgorithmFailure):
        router.input("sgd", _sample(9))

    assert checkpoint.read_bytes() == before
    assert not checkpoint.with_name("sgd.joblib.tmp").exists()
    assert joblib.load(checkpoint)["samples_seen"] == 5


def test_checkpoint_restored_after_restart(sgd, router, make_admin, tmp_path):
    for i in range(7):
        router.input("sgd", _sample(i))
    assert (tmp_path / "models" / "sgd" / "sgd.joblib").exists()
    before = router.query("sgd", {"properties": {"x1": 2, "x2": 0}})["prediction"]

    # shutdown writes a final checkpoint
    sgd.shutdown()

    restarted = make_admin()
    restarted.restore_all()

    engine = restarted.get("sgd").engine
    assert engine.samples_seen == 7
    assert engine.query({"properties": {"x1": 2, "x2": 0}})["prediction"] == pytest.approx(before)


def test_destroy_removes_checkpoint(sgd, router, tmp_path):
    for i in range(5):
        router.input("sgd", _sample(i))

    sgd.destroy("sgd")

    assert not (tmp_path / "models" / "sgd").exists()
