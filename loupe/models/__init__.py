"""Models package: importing it registers every table on `Base.metadata`."""
from loupe.models.account import Account, Integration  # noqa: F401
from loupe.models.page import Baseline, Deploy, Page, Scan  # noqa: F401
from loupe.models.change import (  # noqa: F401
    ChangeCheckpoint,
    ChangeLifecycleEvent,
    DetectedChange,
    OutcomeFeedback,
)
from loupe.models.workflow import WorkflowStep  # noqa: F401
