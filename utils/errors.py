"""Domain error taxonomy shared by the ledger, rewards and report lifecycle."""


class WasteRewardsError(Exception):
    """Base class for errors raised by the reward and lifecycle services."""

    status_code = 400


class ValidationError(WasteRewardsError):
    """Input has the wrong shape and was rejected before persistence."""


class RecordNotFoundError(WasteRewardsError):
    status_code = 404


class RaceConditionError(WasteRewardsError):
    """Another actor won a conditional update (e.g. the task was already claimed)."""

    status_code = 409


class InvalidTransitionError(WasteRewardsError):
    """A lifecycle transition was attempted from a state that does not allow it."""

    status_code = 409


class InsufficientPointsError(WasteRewardsError):
    status_code = 402


class VerificationError(WasteRewardsError):
    """The image verification service timed out or returned unusable output."""

    status_code = 502


class StoreError(WasteRewardsError):
    """A persistence write failed; the user-visible action did not happen."""

    status_code = 503
