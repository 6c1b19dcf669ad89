"""
Error taxonomy for the production pipeline.

Structural errors are raised synchronously to whoever called the mutating
operation. Job errors (GenerationFailed, CaptionBurnExhausted) are caught at
the job boundary and only ever show up as asset status / metadata.
"""


class StudioError(Exception):
    """Base class for every error the pipeline raises on purpose."""


# ── Structural (raised to callers) ───────────────────────────────────────────

class NotFound(StudioError, LookupError):
    def __init__(self, asset_id: str, what: str = "Asset"):
        super().__init__(f"{what} {asset_id} not found")
        self.asset_id = asset_id


class InvalidTransition(StudioError, ValueError):
    def __init__(self, asset_id: str, current: str, requested: str):
        super().__init__(f"Asset {asset_id}: illegal transition {current} → {requested}")
        self.asset_id = asset_id
        self.current = current
        self.requested = requested


class KindMismatch(StudioError, ValueError):
    pass


class SourceNotReady(StudioError, ValueError):
    pass


class AlreadyInitialized(StudioError, RuntimeError):
    pass


# ── Job errors (recorded, never raised to callers) ───────────────────────────

class GenerationFailed(StudioError):
    """External generator returned an error or a malformed result."""

    def __init__(self, message: str, code: str = "generation_error"):
        super().__init__(message)
        self.code = code


class CaptionBurnExhausted(StudioError):
    def __init__(self, asset_id: str, attempts: int):
        super().__init__(f"Caption burn for {asset_id} failed after {attempts} attempts")
        self.asset_id = asset_id
        self.attempts = attempts


class SyncFailed(StudioError):
    pass
