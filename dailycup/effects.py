from typing import Any, Callable

from .errors import best_effort

Defer = Callable[..., Any]


def run_now(fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
    fn(*args, **kwargs)


class AfterCommit:
    """Side effects collected inside a transaction and released once it commits."""

    def __init__(self):
        self.calls: list[tuple[str, Callable[..., Any], tuple, dict]] = []

    def add(self, label: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        self.calls.append((label, fn, args, kwargs))

    def run(self, defer: Defer = run_now) -> None:
        """Hand each call to ``defer`` (``BackgroundTasks.add_task`` in the API) wrapped in best_effort."""
        calls, self.calls = self.calls, []
        for label, fn, args, kwargs in calls:
            defer(best_effort, label, fn, *args, **kwargs)
