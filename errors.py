"""
Error taxonomy for PFP Forge.

Collection-level errors abort a whole run. Per-token errors are logged,
recorded on the run result and the run carries on.
"""

from typing import Any, Dict, Optional


class PfpForgeError(Exception):
    """Base class for all pipeline errors."""

    kind = "PfpForgeError"
    fatal = True

    def __init__(self, message: str, token_id: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.token_id = token_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind,
            'message': self.message,
            'token_id': self.token_id,
            'fatal': self.fatal,
        }


class InsufficientCombinationSpace(PfpForgeError):
    """Requested collection size exceeds the number of distinct combinations."""

    kind = "InsufficientCombinationSpace"

    def __init__(self, requested: int, available: int, message: Optional[str] = None):
        super().__init__(
            message or f"Requested {requested} unique combinations but the catalog only supports {available}"
        )
        self.requested = requested
        self.available = available


class CombinationRetryExhausted(InsufficientCombinationSpace):
    """The per-token retry budget ran out before a fresh combination was found."""

    kind = "CombinationRetryExhausted"

    def __init__(self, requested: int, available: int, generated: int, attempts: int):
        super().__init__(
            requested,
            available,
            f"Only generated {generated}/{requested} unique combinations; "
            f"token {generated + 1} failed after {attempts} attempts",
        )
        self.generated = generated
        self.attempts = attempts


class LayerLoadFailure(PfpForgeError):
    """A trait layer could not be resolved; compositing continues without it."""

    kind = "LayerLoadFailure"
    fatal = False

    def __init__(self, category: str, trait: str, asset_ref: Optional[str],
                 reason: str, token_id: Optional[int] = None):
        super().__init__(f"Failed to load {category}/{trait} ({asset_ref}): {reason}", token_id)
        self.category = category
        self.trait = trait
        self.asset_ref = asset_ref


class DegenerateSilhouette(PfpForgeError):
    """Silhouette came out with zero black pixels."""

    kind = "DegenerateSilhouette"
    fatal = False


class TokenRenderFailure(PfpForgeError):
    """Metadata or compositing for one token failed; the token is skipped."""

    kind = "TokenRenderFailure"
    fatal = False


class ArchiveWriteFailure(PfpForgeError):
    """Writing to or finalizing the archive container failed."""

    kind = "ArchiveWriteFailure"


class CancellationRequested(PfpForgeError):
    """Clean stop requested by the caller. Not a failure."""

    kind = "CancellationRequested"
    fatal = False

    def __init__(self, message: str = "Cancellation requested", token_id: Optional[int] = None):
        super().__init__(message, token_id)
