"""
Releasable Cloud Resources

A :class:`Resource` is anything billable that has to be given back. Releases
are idempotent per handle: the first ``release()`` starts the work and every
later call returns the same future, so a dependency shared by two composites
is released once.
"""

import threading
from abc import ABC, abstractmethod
from concurrent.futures import Future
from typing import Callable, List, Optional, Sequence, TypeVar

from loguru import logger

T = TypeVar("T")


def spawn(fn: Callable[[], T], name: str) -> "Future[T]":
    """Run ``fn`` on a fresh daemon thread and expose its outcome as a future"""
    future: "Future[T]" = Future()

    def target() -> None:
        if not future.set_running_or_notify_cancel():
            return
        try:
            future.set_result(fn())
        except BaseException as e:
            future.set_exception(e)

    threading.Thread(target=target, name=name, daemon=True).start()
    return future


def completed(value: Optional[T] = None) -> "Future[Optional[T]]":
    future: "Future[Optional[T]]" = Future()
    future.set_result(value)
    return future


class Resource(ABC):
    """A provisioned resource that can be released"""

    def __init__(self) -> None:
        self._release_lock = threading.Lock()
        self._release_future: Optional[Future] = None

    def release(self) -> Future:
        """Start releasing, or return the release already in progress"""
        with self._release_lock:
            if self._release_future is None:
                self._release_future = self._start_release()
            return self._release_future

    @property
    def is_released(self) -> bool:
        return self._release_future is not None and self._release_future.done()

    @abstractmethod
    def _start_release(self) -> Future:
        ...


class NoResource(Resource):
    """Nothing to release"""

    def _start_release(self) -> Future:
        return completed()

    def __repr__(self) -> str:
        return "NoResource()"


class CallbackResource(Resource):
    """Released by calling a function, e.g. a cloud API delete call"""

    def __init__(self, description: str, release_fn: Callable[[], None]):
        super().__init__()
        self.description = description
        self._release_fn = release_fn

    def _start_release(self) -> Future:
        def do_release() -> None:
            logger.info(f"Releasing {self.description}...")
            self._release_fn()
            logger.info(f"Released {self.description}")

        return spawn(do_release, name=f"release-{self.description}")

    def __repr__(self) -> str:
        return f"CallbackResource({self.description!r})"


def _release_in_order(resources: Sequence[Resource]) -> None:
    """
    Release one after another, attempting every release even if an earlier
    one fails. The first error is raised at the end.
    """
    first_error: Optional[BaseException] = None
    for resource in resources:
        try:
            resource.release().result()
        except Exception as e:
            logger.error(f"Failed to release {resource}: {e}")
            if first_error is None:
                first_error = e
    if first_error is not None:
        raise first_error


class DependentResources(Resource):
    """
    A resource (``user``) that depends on another (``dependency``).

    The user is released first, then the dependency, even if the user's
    release failed.
    """

    def __init__(self, user: Resource, dependency: Resource):
        super().__init__()
        self.user = user
        self.dependency = dependency

    def _start_release(self) -> Future:
        return spawn(
            lambda: _release_in_order([self.user, self.dependency]),
            name="release-dependent-resources",
        )

    def __repr__(self) -> str:
        return f"DependentResources(user={self.user!r}, dependency={self.dependency!r})"


class CompositeResource(Resource):
    """Resources listed in creation order, released in reverse"""

    def __init__(self, resources: Sequence[Resource]):
        super().__init__()
        self.resources: List[Resource] = list(resources)

    def _start_release(self) -> Future:
        return spawn(
            lambda: _release_in_order(list(reversed(self.resources))),
            name="release-composite",
        )

    def __repr__(self) -> str:
        return f"CompositeResource({self.resources!r})"


def compose(user: Resource, dependency: Resource) -> Resource:
    return DependentResources(user=user, dependency=dependency)
