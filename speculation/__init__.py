"""
Foresight — Speculation Package

Adaptive threshold, learning feedback loop, eligibility policy,
speculative executor and the SpeculativeEngine runtime facade.
"""

from speculation.threshold import AdaptiveThreshold, ThresholdManager, ThresholdOutOfBand
from speculation.eligibility import EligibilityPolicy, SpeculationConflict
from speculation.learning import FeedbackLoop, TraceBuffer, ExecutionTrace, Outcome
from speculation.executor import SpeculativeExecutor, SpeculativeTask, SpeculationStatus
from speculation.runtime import SpeculativeEngine
