"""Internal helpers for working with ``Cube.member`` paths."""

from __future__ import annotations

from dataclasses import dataclass

from .types import Query


@dataclass(frozen=True)
class MemberPath:
    """Representation of a semantic-layer member reference.

    Measures and dimensions are addressed as ``Cube.member``.  Time dimensions
    returned by the API may carry a trailing granularity
    (``Events.timestamp.day``).  Several engines need the cube portion to pick
    the right binding key for a query, and labels need the short member name,
    so the parsing lives in one place.
    """

    cube: str | None
    name: str
    granularity: str | None = None

    @property
    def member(self) -> str:
        return f"{self.cube}.{self.name}" if self.cube else self.name


def parse_member_path(member: str) -> MemberPath:
    """Return the :class:`MemberPath` describing ``member``.

    A member without a cube prefix is represented with ``cube=None``.
    """

    parts = member.split(".")
    if len(parts) == 1:
        return MemberPath(cube=None, name=parts[0])
    granularity = parts[2] if len(parts) > 2 else None
    return MemberPath(cube=parts[0], name=parts[1], granularity=granularity)


def cube_of(member: str) -> str | None:
    return parse_member_path(member).cube


def short_name(member: str) -> str:
    return parse_member_path(member).name


def cube_name_from_query(query: Query) -> str | None:
    """Return the cube a query is primarily about.

    The first measure wins, then the first dimension, then the first time
    dimension.
    """

    for member in query.members():
        cube = cube_of(member)
        if cube:
            return cube
    return None


def is_member_path(member: str) -> bool:
    path = parse_member_path(member)
    return bool(path.cube and path.name)
