import time
from typing import Optional, Sequence

from datasources import Datasource


def _retention_start(ds: Datasource, now: int) -> Optional[int]:
    """Oldest instant the datasource still holds, or None when retention is unlimited."""
    if not ds.retention:
        return None
    return now - ds.retention


def select_for_instant(t: int, datasources: Sequence[Datasource], now: Optional[int] = None) -> Optional[Datasource]:
    """
    Pick the datasource that answers an instant query at the finest resolution.

    Args:
        t: Query time in nanoseconds since the epoch
        datasources: Configured datasources, in configuration order
        now: Current time in nanoseconds, defaults to the wall clock

    Returns:
        The datasource with the smallest resolution whose retention covers t.
        Among equal resolutions the first one listed wins. None if no
        datasource retains t.
    """
    if now is None:
        now = time.time_ns()

    target = None
    for ds in datasources:
        cutoff = _retention_start(ds, now)
        if cutoff is not None and t < cutoff:
            continue
        if target is None or ds.resolution < target.resolution:
            target = ds
    return target


def select_for_range(
    start: int,
    end: int,
    step: int,
    datasources: Sequence[Datasource],
    now: Optional[int] = None,
) -> Optional[Datasource]:
    """
    Pick the cheapest datasource that can still honor a range query's step.

    A datasource is usable when its retention covers both start and end and
    its resolution is not coarser than step. Among usable datasources the one
    with the smallest step - resolution gap wins, i.e. the coarsest resolution
    that still fits; the first one listed wins ties.

    Args:
        start: Range start in nanoseconds since the epoch
        end: Range end in nanoseconds since the epoch
        step: Query resolution step in nanoseconds
        datasources: Configured datasources, in configuration order
        now: Current time in nanoseconds, defaults to the wall clock

    Returns:
        The selected datasource, or None if no datasource is usable.
    """
    if now is None:
        now = time.time_ns()

    target = None
    target_gap = None
    for ds in datasources:
        cutoff = _retention_start(ds, now)
        if cutoff is not None and (start < cutoff or end < cutoff):
            continue

        gap = step - ds.resolution
        if gap < 0:
            continue

        if target is None or gap < target_gap:
            target = ds
            target_gap = gap
    return target
