"""
Per-view reflectance samples and the stream of views a fit consumes.

A captured view is reduced, by an upstream collaborator, to one reflectance
sample per texel of the surface texture. Each sample records:
    visibility        — > 0 when the texel was seen and lit in this view
    halfway_index     — half-angle between view and light, normalized to [0, 1]
    geom_ratio        — geometric attenuation ratio applied to the specular term
    additional_weight — non-negative regression weight for the sample
    color             — observed RGB reflectance

ReflectanceData stores those as parallel numpy arrays (one entry per texel,
in linear texel order) so the fitting code can work on whole views at once
instead of pixel by pixel.

ReflectanceViewStream is the finite, re-iterable sequence of views. Basis
reconstruction traverses it as a parallel map-then-reduce; weight
optimization traverses it once per texel block. Views can be held in memory
or produced lazily by loader callables, which keeps peak memory bounded for
large captures.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Callable, Iterable, Iterator, TypeVar

import numpy as np

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


@dataclass(frozen=True)
class ReflectanceSample:
    """One texel's sample from one view (scalar convenience view)."""
    visibility: float
    halfway_index: float
    geom_ratio: float
    additional_weight: float
    red: float
    green: float
    blue: float


class ReflectanceData:
    """
    Read-only reflectance samples for a single view.

    Args:
        visibility:        (P,) array, > 0 where the sample is usable.
        halfway_index:     (P,) array in [0, 1].
        geom_ratio:        (P,) array.
        additional_weight: (P,) array, >= 0.
        color:             (P, 3) RGB reflectance.

    All arrays are copied to float64 and flagged read-only, so a view can be
    shared between worker threads without defensive copies.
    """

    def __init__(self, visibility, halfway_index, geom_ratio, additional_weight, color):
        self.visibility = _readonly(visibility)
        self.halfway_index = _readonly(halfway_index)
        self.geom_ratio = _readonly(geom_ratio)
        self.additional_weight = _readonly(additional_weight)
        self.color = _readonly(color)

        size = self.visibility.shape[0]
        for name in ("halfway_index", "geom_ratio", "additional_weight"):
            arr = getattr(self, name)
            if arr.shape != (size,):
                raise ValueError(f"{name} must have shape ({size},), got {arr.shape}")
        if self.color.shape != (size, 3):
            raise ValueError(f"color must have shape ({size}, 3), got {self.color.shape}")

    @property
    def size(self) -> int:
        return self.visibility.shape[0]

    def __len__(self):
        return self.size

    @property
    def red(self) -> np.ndarray:
        return self.color[:, 0]

    @property
    def green(self) -> np.ndarray:
        return self.color[:, 1]

    @property
    def blue(self) -> np.ndarray:
        return self.color[:, 2]

    def visible_mask(self) -> np.ndarray:
        """Boolean mask of samples that contribute to any fit."""
        return self.visibility > 0

    def sample(self, p: int) -> ReflectanceSample:
        return ReflectanceSample(
            visibility=float(self.visibility[p]),
            halfway_index=float(self.halfway_index[p]),
            geom_ratio=float(self.geom_ratio[p]),
            additional_weight=float(self.additional_weight[p]),
            red=float(self.color[p, 0]),
            green=float(self.color[p, 1]),
            blue=float(self.color[p, 2]),
        )

    def subset(self, start: int, stop: int) -> "ReflectanceData":
        """Samples for the linear texel range [start, stop)."""
        return ReflectanceData(
            self.visibility[start:stop],
            self.halfway_index[start:stop],
            self.geom_ratio[start:stop],
            self.additional_weight[start:stop],
            self.color[start:stop],
        )

    @classmethod
    def concatenate(cls, *views: "ReflectanceData") -> "ReflectanceData":
        """Join the samples of several views into one sample set."""
        if not views:
            raise ValueError("At least one view is required")
        return cls(
            np.concatenate([v.visibility for v in views]),
            np.concatenate([v.halfway_index for v in views]),
            np.concatenate([v.geom_ratio for v in views]),
            np.concatenate([v.additional_weight for v in views]),
            np.concatenate([v.color for v in views]),
        )


def _readonly(values) -> np.ndarray:
    arr = np.array(values, dtype=np.float64, copy=True)
    arr.flags.writeable = False
    return arr


class ReflectanceViewStream:
    """
    A finite, re-iterable sequence of per-view reflectance data.

    Build one from views already in memory:
        stream = ReflectanceViewStream(views)
    or from loader callables that produce a view on demand:
        stream = ReflectanceViewStream.from_loaders([lambda: load(i) for i ...])

    Iterating twice yields the same views in the same order, which weight
    optimization relies on when it processes the texture block by block.
    """

    def __init__(self, views: Iterable[ReflectanceData] = ()):
        self._loaders: list[Callable[[], ReflectanceData]] = [
            (lambda view=view: view) for view in views
        ]

    @classmethod
    def from_loaders(cls, loaders: Iterable[Callable[[], ReflectanceData]]) -> "ReflectanceViewStream":
        stream = cls()
        stream._loaders = list(loaders)
        return stream

    def __len__(self):
        return len(self._loaders)

    def __iter__(self) -> Iterator[ReflectanceData]:
        for load in self._loaders:
            yield load()

    def map_reduce(self, fn: Callable[[ReflectanceData], T], combine: Callable[[R, T], R],
                   initial: R, max_workers: int | None = None,
                   on_view_finished: Callable[[int, int], None] | None = None) -> R:
        """
        Apply fn to every view on a thread pool and fold the results.

        fn runs concurrently on worker threads, one view per task. combine is
        only ever called from the calling thread, in completion order, so the
        running total needs no lock. combine must therefore be associative and
        commutative for the result to be independent of scheduling.

        Args:
            fn:               Per-view computation (loads the view itself).
            combine:          (total, partial) -> total.
            initial:          Starting value of the fold.
            max_workers:      Thread pool size (None = library default).
            on_view_finished: Called as (finished_count, view_count) after each
                              merge; observational only.

        Returns:
            The folded total.
        """
        total = initial
        view_count = len(self._loaders)
        if view_count == 0:
            return total

        def task(load):
            return fn(load())

        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            futures = [executor.submit(task, load) for load in self._loaders]
            finished = 0
            for future in as_completed(futures):
                # result() re-raises any exception from the worker thread, which
                # aborts the whole traversal; the executor's context manager
                # waits for outstanding tasks before propagating.
                total = combine(total, future.result())
                finished += 1
                logger.info("Finished view %d of %d.", finished, view_count)
                if on_view_finished is not None:
                    on_view_finished(finished, view_count)

        return total
