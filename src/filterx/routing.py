"""Confidence-based routing of classified images into archive categories."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from filterx.config import Settings


class Category(StrEnum):
    NORMAL = "normal"
    TAMPERED = "tampered"
    UNIDENTIFIED = "unidentified"


@dataclass(frozen=True)
class RoutingPolicy:
    """Routes a (confidence, label) pair to exactly one :class:`Category`.

    Only predictions at or above ``threshold`` are trusted; those go to
    ``normal`` when the label matches ``safe_label`` (case-insensitive) and to
    ``tampered`` otherwise. Everything else, NaN included, is ``unidentified``.
    """

    safe_label: str = "normal"
    threshold: float = 1.0

    @classmethod
    def from_settings(cls, settings: Settings) -> RoutingPolicy:
        return cls(safe_label=settings.safe_label, threshold=settings.confidence_threshold)

    def route(self, confidence: float, label: str) -> Category:
        if confidence >= self.threshold:
            if label.lower() == self.safe_label.lower():
                return Category.NORMAL
            return Category.TAMPERED
        return Category.UNIDENTIFIED


DEFAULT_POLICY = RoutingPolicy()


def route(confidence: float, label: str) -> Category:
    """Route with the default policy (safe label ``normal``, threshold 1.0)."""
    return DEFAULT_POLICY.route(confidence, label)
