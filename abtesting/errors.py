"""Error types raised by the experimentation core.

The HTTP layer maps these onto status codes (see main.py). Library callers
catch them directly.
"""


class ABTestingError(Exception):
    """Base class for every error the core raises on purpose"""


class ValidationError(ABTestingError):
    """Experiment definition breaks an invariant (weights, variants, control, metric)"""


class NotFoundError(ABTestingError):
    """Unknown experiment id"""

    def __init__(self, test_id: str):
        super().__init__(f"Experiment not found: {test_id}")
        self.test_id = test_id


class InvalidStateError(ABTestingError):
    """Operation is not allowed in the experiment's current status"""

    def __init__(self, test_id: str, status: str, action: str):
        super().__init__(f"Cannot {action} experiment {test_id} (status: {status})")
        self.test_id = test_id
        self.status = status
        self.action = action


class SnapshotError(ABTestingError):
    """Stored snapshot is malformed and was rejected at load time"""
