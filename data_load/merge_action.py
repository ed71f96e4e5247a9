"""MERGE behaviours as a bit-flag union."""

from __future__ import annotations

from enum import IntFlag


class MergeAction(IntFlag):
    INSERT = 1
    UPDATE = 2
    INSERT_OR_UPDATE = INSERT | UPDATE

    @classmethod
    def parse(cls, value: str | MergeAction | None) -> MergeAction:
        """Case-insensitive parse; unknown or empty values mean INSERT_OR_UPDATE."""
        if isinstance(value, MergeAction):
            return value
        normalized = (value or "").strip().replace("_", "").replace(" ", "").lower()
        for member in (cls.INSERT, cls.UPDATE):
            if normalized == member.name.lower():
                return member
        return cls.INSERT_OR_UPDATE

    @property
    def has_insert(self) -> bool:
        return bool(self & MergeAction.INSERT)

    @property
    def has_update(self) -> bool:
        return bool(self & MergeAction.UPDATE)
