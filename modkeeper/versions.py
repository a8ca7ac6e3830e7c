from __future__ import annotations

import logging
import re
from typing import Iterable, List, Optional, Sequence, Tuple

from .errors import NotFound, ValidationError
from .models import ArtifactTarget, VersionDescriptor
from .registry import RegistryClient

logger = logging.getLogger(__name__)

_NUMERIC_RUN = re.compile(r"\d+(?:\.\d+)*")
_PRERELEASE_TAG = re.compile(r"(?:alpha|beta|pre|rc|snapshot|dev|a|b)(?![a-z])", re.IGNORECASE)


def _release_segments(version: str) -> List[Tuple[int, ...]]:
    """Numeric runs of each ``-``-separated part up to a pre-release tag.

    ``mc1.20.1-0.5.9`` -> [(1, 20, 1), (0, 5, 9)]; ``0.15.10-pre`` ->
    [(0, 15, 10)]. Build metadata after ``+`` and parts without digits
    (``fabric``) are dropped.
    """
    text = str(version).strip()
    if text[:1] in ("v", "V"):
        text = text[1:]
    text = text.split("+", 1)[0]
    segments: List[Tuple[int, ...]] = []
    for part in text.split("-"):
        if _PRERELEASE_TAG.match(part):
            break
        match = _NUMERIC_RUN.search(part)
        if match:
            segments.append(tuple(int(number) for number in match.group(0).split(".")))
    return segments


def parse_version(version: str) -> Tuple[int, ...]:
    """Numeric release components of a version string.

    ``v1.2.3`` -> (1, 2, 3); ``0.15.10-pre`` -> (0, 15, 10);
    ``mc1.20.1-0.5.9`` -> (1, 20, 1, 0, 5, 9).
    """
    return tuple(number for segment in _release_segments(version) for number in segment)


def compare_versions(a: str, b: str) -> int:
    """Return 1, 0 or -1, comparing segment by segment; missing components count as 0."""
    left = _release_segments(a)
    right = _release_segments(b)
    for index in range(max(len(left), len(right))):
        x = left[index] if index < len(left) else ()
        y = right[index] if index < len(right) else ()
        width = max(len(x), len(y))
        x += (0,) * (width - len(x))
        y += (0,) * (width - len(y))
        if x > y:
            return 1
        if x < y:
            return -1
    return 0


def is_upgrade(candidate: str, installed: Optional[str]) -> bool:
    if not installed:
        return False
    return compare_versions(candidate, installed) > 0


def _order(candidates: Iterable[VersionDescriptor]) -> List[VersionDescriptor]:
    pool = list(candidates)
    stable = [version for version in pool if version.is_stable]
    # sorted() is stable with reverse=True too: ties keep registry order
    return sorted(stable or pool, key=lambda version: version.published_at, reverse=True)


def select_best_version(candidates: Sequence[VersionDescriptor]) -> Optional[VersionDescriptor]:
    ordered = _order(candidates)
    return ordered[0] if ordered else None


class VersionResolver:
    def __init__(self, client: RegistryClient) -> None:
        self._client = client

    def list_compatible(
        self,
        target: ArtifactTarget,
        *,
        require_stable_only: bool = False,
    ) -> List[VersionDescriptor]:
        """All versions supporting ``target``: stable first, newest first."""
        _validate_target(target)
        versions = self._client.list_versions(target.project_id, target.loader, target.game_version)
        matching = [version for version in versions if version.supports(target)]
        if require_stable_only:
            matching = [version for version in matching if version.is_stable]
        if not matching:
            raise NotFound(f"No version of {target.project_id} supports {target.loader} {target.game_version}.")

        stable = [version for version in matching if version.is_stable]
        unstable = [version for version in matching if not version.is_stable]
        ordered = _order(stable) + _order(unstable)
        logger.debug(
            "Resolved %d/%d candidate(s) for %s (stable=%d)",
            len(ordered),
            len(versions),
            target,
            len(stable),
        )
        return ordered

    def resolve(self, target: ArtifactTarget, *, require_stable_only: bool = False) -> VersionDescriptor:
        candidates = self.list_compatible(target, require_stable_only=require_stable_only)
        best = select_best_version(candidates)
        if best is None:  # pragma: no cover - list_compatible never returns empty
            raise NotFound(f"No version of {target.project_id} matched {target}.")
        return best

    def find_update(
        self,
        target: ArtifactTarget,
        installed_version: Optional[str],
        *,
        require_stable_only: bool = False,
    ) -> Optional[VersionDescriptor]:
        """The resolved version if it is a real upgrade over ``installed_version``."""
        best = self.resolve(target, require_stable_only=require_stable_only)
        if is_upgrade(best.version_number, installed_version):
            return best
        return None


def _validate_target(target: ArtifactTarget) -> None:
    missing = [name for name in ("project_id", "loader", "game_version") if not getattr(target, name)]
    if missing:
        raise ValidationError(f"Target is missing {', '.join(missing)}.")
