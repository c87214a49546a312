"""
ParaBrain Capture - Personal Capture Decision Pipeline

Turns a free-form message (typed, or read from an image) into either a
conversational reply or a committed write into tasks, projects, areas,
resources, transactions or module entries.

Key Components:
- ContextLoader: Grounding snapshot from recent records and session turns
- DuplicateDetector: Exact / URL / semantic duplicate verdict
- CaptureClassifier: One structured classification call per message
- Overrides and gates: Deterministic corrections, then confirmation gates
- WriteExecutor: Parent resolution and record writes
- ImageIntake: Receipt/slip fast path and proxy messages for images
- CaptureIntake: Exactly-once processing per inbound event

Rules:
1. Never create the same thing twice without an explicit confirmation
2. Never claim a save that did not happen
3. Low confidence or ambiguity asks instead of writing
4. A named parent is linked, created, or asked about; never dropped
"""

from .classifier import CaptureClassifier, ClassifierUnavailableError
from .context_loader import ContextLoader, GroundingSnapshot
from .dedup_detector import DuplicateDetector
from .executor import WriteExecutor
from .image_intake import ImageIntake, VisionAnalyzer
from .intake import CaptureIntake
from .pipeline import CapturePipeline, to_capture_log_payload
from .store import CaptureStore, DuplicateEventError, JsonCaptureStore, StoreError

__all__ = [
    "CaptureClassifier",
    "ClassifierUnavailableError",
    "ContextLoader",
    "GroundingSnapshot",
    "DuplicateDetector",
    "WriteExecutor",
    "ImageIntake",
    "VisionAnalyzer",
    "CaptureIntake",
    "CapturePipeline",
    "to_capture_log_payload",
    "CaptureStore",
    "DuplicateEventError",
    "JsonCaptureStore",
    "StoreError",
]
