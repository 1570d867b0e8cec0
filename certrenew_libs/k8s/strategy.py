#!/usr/bin/env python3
"""Common interface of the certificate renewal strategies."""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

from certrenew_libs.common import ArgparsableEnum


class RenewalStrategyName(ArgparsableEnum):
    """The available ways to renew the control plane certificates."""

    IN_PLACE = "in-place"
    ROLLING_UPDATE = "rolling-update"

    @classmethod
    def from_renew_in_place(cls, renew_in_place: bool) -> "RenewalStrategyName":
        """Map the --renew-in-place flag to a strategy."""
        return cls.IN_PLACE if renew_in_place else cls.ROLLING_UPDATE


@dataclass(frozen=True)
class RenewalOutcome:
    """What a successful renewal did."""

    strategy: RenewalStrategyName

    def summary(self) -> str:
        """One line summary, used for logging."""
        return f"{self.strategy} renewal done"


class RenewalStrategy(ABC):
    """A way of renewing the control plane certificates."""

    name: RenewalStrategyName

    @abstractmethod
    def renew(self, expiration_threshold: str) -> RenewalOutcome:
        """Renew the certificates that expire within the given threshold, raises on any failure."""
