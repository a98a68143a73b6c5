"""
Version strings, release channels and dependency constraints.

Ordering is major.minor.patch with numeric per-segment comparison; missing
segments count as 0. A pre-release sorts below its release.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional, Tuple, Union

from plugmarket.marketplace.models import Channel

_VERSION_RE = re.compile(
    r"^v?(?P<release>\d+(?:\.\d+){0,2})"
    r"(?:-(?P<pre>[0-9A-Za-z]+(?:[.-][0-9A-Za-z]+)*))?"
    r"(?:\+(?P<build>[0-9A-Za-z.-]+))?$"
)

# Longest operators first so ">=" is not read as ">".
_CONSTRAINT_OPERATORS = (">=", "<=", "^", "~", ">", "<", "=")


class InvalidVersion(ValueError):
    pass


@dataclass(frozen=True)
class SemanticVersion:
    major: int
    minor: int
    patch: int
    prerelease: Tuple[Union[int, str], ...] = ()
    raw: str = ""

    @property
    def is_prerelease(self) -> bool:
        return bool(self.prerelease)

    def sort_key(self) -> tuple:
        # Releases sort above any of their pre-releases; numeric identifiers
        # sort below alphanumeric ones.
        if not self.prerelease:
            pre_key: tuple = (1,)
        else:
            pre_key = (0,) + tuple(
                (0, part, "") if isinstance(part, int) else (1, 0, part)
                for part in self.prerelease
            )
        return (self.major, self.minor, self.patch, pre_key)

    def __str__(self) -> str:
        return self.raw or f"{self.major}.{self.minor}.{self.patch}"


def parse_version(value: str) -> SemanticVersion:
    text = (value or "").strip()
    match = _VERSION_RE.match(text)
    if not match:
        raise InvalidVersion(f"Invalid version string: {value!r}")

    parts = [int(p) for p in match.group("release").split(".")]
    parts += [0] * (3 - len(parts))

    prerelease: Tuple[Union[int, str], ...] = ()
    if match.group("pre"):
        prerelease = tuple(
            int(token) if token.isdigit() else token.lower()
            for token in re.split(r"[.-]", match.group("pre"))
        )
    return SemanticVersion(parts[0], parts[1], parts[2], prerelease, text)


def is_valid_version(value: str) -> bool:
    try:
        parse_version(value)
    except InvalidVersion:
        return False
    return True


def compare_versions(v1: str, v2: str) -> int:
    a = parse_version(v1).sort_key()
    b = parse_version(v2).sort_key()
    if a < b:
        return -1
    if a > b:
        return 1
    return 0


def version_gte(installed: Optional[str], required: Optional[str]) -> bool:
    """True when ``installed >= required``; an empty requirement always passes."""
    if not required:
        return True
    if not installed:
        return False
    return compare_versions(installed, required) >= 0


def determine_channel(version: str) -> str:
    if "-alpha" in version:
        return Channel.ALPHA.value
    if "-beta" in version:
        return Channel.BETA.value
    if "-rc" in version:
        return Channel.RC.value
    return Channel.STABLE.value


@dataclass(frozen=True)
class VersionConstraint:
    operator: str
    version: str

    def is_satisfied_by(self, installed: str) -> bool:
        cmp = compare_versions(installed, self.version)
        if self.operator in (">=", "^", "~"):
            # ^ and ~ carry no upper bound here.
            return cmp >= 0
        if self.operator == ">":
            return cmp > 0
        if self.operator == "<=":
            return cmp <= 0
        if self.operator == "<":
            return cmp < 0
        return cmp == 0

    def __str__(self) -> str:
        return f"{self.operator}{self.version}"


def parse_constraint(value: str) -> VersionConstraint:
    text = (value or "").strip()
    if not text or text == "*":
        return VersionConstraint(">=", "0.0.0")
    for operator in _CONSTRAINT_OPERATORS:
        if text.startswith(operator):
            version = text[len(operator):].strip()
            parse_version(version)
            return VersionConstraint(operator, version)
    parse_version(text)
    return VersionConstraint(">=", text)


def satisfies(installed: str, constraint: str) -> bool:
    return parse_constraint(constraint).is_satisfied_by(installed)
