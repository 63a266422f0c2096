"""Semantic version range matching.

Ranges follow the npm dialect the client SDKs send:

    ^1.2.0          >=1.2.0 <2.0.0
    ~1.2.0          >=1.2.0 <1.3.0
    1.x, 1.2.*      wildcards
    >=1.0.0 <2.0.0  intersection
    ^1 || ^2        union
    1.0.0 - 1.4     hyphen range

A bare full version is an exact comparator.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence, TypeVar

import semver

from engine.errors import NotFound

T = TypeVar("T")

LATEST = "latest"

_PARTIAL = re.compile(
    r"^v?(?P<major>0|[1-9]\d*|[xX*])"
    r"(?:\.(?P<minor>0|[1-9]\d*|[xX*]))?"
    r"(?:\.(?P<patch>0|[1-9]\d*|[xX*]))?"
    r"(?:-(?P<pre>[0-9A-Za-z.-]+))?"
    r"(?:\+[0-9A-Za-z.-]+)?$"
)
_COMPARATOR = re.compile(r"^(?P<op><=|>=|<|>|=|\^|~)?(?P<version>.*)$")
_OP_SPACING = re.compile(r"(<=|>=|<|>|=|\^|~)\s+")
_WILDCARDS = {"x", "X", "*"}


@dataclass(frozen=True)
class _Partial:
    major: Optional[int]
    minor: Optional[int]
    patch: Optional[int]
    prerelease: Optional[str] = None

    def floor(self) -> semver.Version:
        return semver.Version(
            self.major or 0, self.minor or 0, self.patch or 0, prerelease=self.prerelease
        )


Comparator = tuple[str, semver.Version]


def parse_version(raw: str) -> Optional[semver.Version]:
    """Parse a concrete version string, tolerating a leading ``v``."""
    candidate = raw.strip()
    if candidate[:1] in ("v", "V"):
        candidate = candidate[1:]
    try:
        return semver.Version.parse(candidate)
    except ValueError:
        return None


def _parse_partial(raw: str) -> _Partial:
    match = _PARTIAL.match(raw.strip())
    if not match:
        raise ValueError(f"Invalid version in range: {raw!r}")

    def part(name: str) -> Optional[int]:
        value = match.group(name)
        if value is None or value in _WILDCARDS:
            return None
        return int(value)

    major, minor, patch = part("major"), part("minor"), part("patch")
    # Anything after a wildcard is a wildcard too ("1.x.3" == "1.x")
    if major is None:
        minor = patch = None
    elif minor is None:
        patch = None
    return _Partial(major, minor, patch, match.group("pre"))


def _bump_after(partial: _Partial) -> semver.Version:
    """First version past the span a partial covers ("1.2" -> 1.3.0)."""
    if partial.minor is None:
        return semver.Version(partial.major + 1, 0, 0)
    return semver.Version(partial.major, partial.minor + 1, 0)


def _expand(op: str, partial: _Partial) -> list[Comparator]:
    if partial.major is None:
        # "*", "x", ">=*"... any version; "<*" matches nothing
        return [("<", semver.Version(0, 0, 0))] if op in ("<", ">") else []

    exact = partial.patch is not None

    if op in ("", "="):
        if exact:
            return [("=", partial.floor())]
        return [(">=", partial.floor()), ("<", _bump_after(partial))]

    if op == "^":
        low = partial.floor()
        if partial.major > 0 or partial.minor is None:
            high = semver.Version(partial.major + 1, 0, 0)
        elif partial.minor > 0 or partial.patch is None:
            high = semver.Version(0, partial.minor + 1, 0)
        else:
            high = semver.Version(0, 0, partial.patch + 1)
        return [(">=", low), ("<", high)]

    if op == "~":
        low = partial.floor()
        if partial.minor is None:
            high = semver.Version(partial.major + 1, 0, 0)
        else:
            high = semver.Version(partial.major, partial.minor + 1, 0)
        return [(">=", low), ("<", high)]

    if op == ">":
        return [(">", partial.floor())] if exact else [(">=", _bump_after(partial))]
    if op == ">=":
        return [(">=", partial.floor())]
    if op == "<":
        return [("<", partial.floor())]
    if op == "<=":
        return [("<=", partial.floor())] if exact else [("<", _bump_after(partial))]

    raise ValueError(f"Unknown range operator: {op!r}")


def parse_range(raw: str) -> list[list[Comparator]]:
    """Parse a range into a union of comparator intersections."""
    alternatives: list[list[Comparator]] = []
    for alternative in raw.split("||"):
        alternative = _OP_SPACING.sub(r"\1", alternative.strip())
        comparators: list[Comparator] = []

        hyphen = re.match(r"^(\S+)\s+-\s+(\S+)$", alternative)
        if hyphen:
            comparators.extend(_expand(">=", _parse_partial(hyphen.group(1))))
            comparators.extend(_expand("<=", _parse_partial(hyphen.group(2))))
        else:
            for token in alternative.split():
                match = _COMPARATOR.match(token)
                comparators.extend(
                    _expand(match.group("op") or "", _parse_partial(match.group("version")))
                )
        alternatives.append(comparators)
    return alternatives


def _test(version: semver.Version, op: str, bound: semver.Version) -> bool:
    cmp = version.compare(bound)
    return {
        "=": cmp == 0,
        "<": cmp < 0,
        "<=": cmp <= 0,
        ">": cmp > 0,
        ">=": cmp >= 0,
    }[op]


def satisfies(version: str, range_: str) -> bool:
    parsed = parse_version(version)
    if parsed is None:
        return False
    try:
        alternatives = parse_range(range_)
    except ValueError:
        return False

    for comparators in alternatives:
        if not all(_test(parsed, op, bound) for op, bound in comparators):
            continue
        # Prereleases only match when the range names a prerelease of the same tuple
        if parsed.prerelease and not any(
            bound.prerelease and bound.finalize_version() == parsed.finalize_version()
            for _, bound in comparators
        ):
            continue
        return True
    return False


def max_satisfying(versions: Iterable[str], range_: str) -> Optional[str]:
    best: Optional[str] = None
    best_parsed: Optional[semver.Version] = None
    for candidate in versions:
        if not satisfies(candidate, range_):
            continue
        parsed = parse_version(candidate)
        if best_parsed is None or parsed > best_parsed:
            best, best_parsed = candidate, parsed
    return best


def resolve_version(requested: str, versions: Sequence[T]) -> T:
    """Pick the version row that best answers ``requested``.

    ``versions`` are rows with ``version`` and ``created_at`` attributes.
    ``latest`` picks the most recently created row; otherwise an exact string
    match wins, then the highest version satisfying ``requested`` as a range.
    Raises NotFound listing every available version when nothing matches.
    """
    available = [v.version for v in versions]

    if versions and requested == LATEST:
        return max(versions, key=lambda v: v.created_at)

    for candidate in versions:
        if candidate.version == requested:
            return candidate

    best = max_satisfying(available, requested)
    if best is not None:
        return next(v for v in versions if v.version == best)

    raise NotFound(
        f"No version matching '{requested}'. Available versions: "
        + (", ".join(available) if available else "none"),
        requested_version=requested,
        available_versions=available,
    )


def compatibility_level(required: str, available: str) -> Optional[str]:
    """Return how far ``available`` drifts from ``required``.

    "none" for identical versions, "patch" or "minor" for drift within the
    same major, None across majors or for non-semver strings that differ.
    """
    if required == available:
        return "none"
    req, avail = parse_version(required), parse_version(available)
    if req is None or avail is None or req.major != avail.major:
        return None
    if req.minor != avail.minor:
        return "minor"
    if req.patch != avail.patch:
        return "patch"
    return "none"
