"""
Transaction classification.

Rule matching (vendor rules, check patterns, pattern rules) with an AI
fallback, run either interactively one transaction at a time or in
parallel with a confidence threshold.

Quick Start:
    >>> from spice.classification import ClassificationEngine
    >>>
    >>> engine = ClassificationEngine(storage, classifier, prompter)
    >>> summary = engine.classify_transactions(CancelContext())
    >>> print(f"{summary.processed} classified")
"""
from spice.classification.batch import BatchOptions, BatchProcessor, BatchSummary
from spice.classification.engine import ClassificationEngine
from spice.classification.errors import ClassificationCancelled, ClassificationRunError
from spice.classification.interfaces import Classifier, ClassifierError, Prompter
from spice.classification.matcher import RuleMatcher

__all__ = [
    "BatchOptions",
    "BatchProcessor",
    "BatchSummary",
    "ClassificationEngine",
    "ClassificationCancelled",
    "ClassificationRunError",
    "Classifier",
    "ClassifierError",
    "Prompter",
    "RuleMatcher",
]
