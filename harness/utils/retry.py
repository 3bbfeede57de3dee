#!filepath: harness/utils/retry.py
import time
import random
from functools import wraps
from typing import Callable, Tuple, Type

from harness.utils.logger import logs


class Retry:
    """
    同步重试工具：指数退避 + jitter。

    只用于幂等操作（例如 metadata 原子写入）。
    mirror append 不可重试：重复写入会破坏 exactly-once。
    """

    @staticmethod
    def wait_time(attempt: int, delay: float, backoff: float, jitter: bool) -> float:
        wait = delay * (backoff ** (attempt - 1))
        if jitter:
            wait = wait * random.uniform(0.8, 1.2)
        return wait

    @staticmethod
    def run(
        func: Callable,
        *args,
        exceptions: Tuple[Type[Exception], ...] = (Exception,),
        max_attempts: int = 3,
        delay: float = 0.05,
        backoff: float = 2.0,
        jitter: bool = True,
        **kwargs,
    ):
        attempt = 1
        while True:
            try:
                return func(*args, **kwargs)

            except exceptions as e:
                if attempt >= max_attempts:
                    logs.error(
                        f"[Retry] {func.__name__} gave up after {attempt} attempts: {e}"
                    )
                    raise

                wait = Retry.wait_time(attempt, delay, backoff, jitter)
                logs.warning(
                    f"[Retry] {func.__name__} attempt {attempt}/{max_attempts} failed: {e}. "
                    f"retry in {wait:.2f}s"
                )
                time.sleep(wait)
                attempt += 1

    @staticmethod
    def decorator(
        exceptions: Tuple[Type[Exception], ...] = (Exception,),
        max_attempts: int = 3,
        delay: float = 0.05,
        backoff: float = 2.0,
        jitter: bool = True,
    ):
        def wrapper(func: Callable):
            @wraps(func)
            def inner(*args, **kwargs):
                return Retry.run(
                    func,
                    *args,
                    exceptions=exceptions,
                    max_attempts=max_attempts,
                    delay=delay,
                    backoff=backoff,
                    jitter=jitter,
                    **kwargs,
                )

            return inner

        return wrapper
