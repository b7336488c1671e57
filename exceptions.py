# exceptions.py
# ------------------------------------------------------------------------------------
#  Error taxonomy shared by the stores, the schedulers and the gateway client.
# ------------------------------------------------------------------------------------


class StudioError(Exception):
    """Base exception for all StoryReel errors."""

    def __init__(self, message: str, details: dict = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self):
        return self.message


# =============================================================================
# GENERATION ERRORS
# =============================================================================

class NoStyleAnchor(StudioError):
    """Raised when generate-all finds no character-bearing scene to anchor the style."""

    def __init__(self):
        super().__init__(
            "Select characters for at least one scene to establish the visual style."
        )


class GatewayError(StudioError):
    """Base exception for failures talking to the generation API."""
    pass


class TransportFailure(GatewayError):
    """Raised on any network-level or HTTP failure calling the generation API."""
    pass


class EmptyGenerationResult(GatewayError):
    """Raised when the generation API answers without a usable image or video."""
    pass


class ReferenceFetchFailed(GatewayError):
    """Raised when a previously rendered image cannot be loaded for reference."""

    def __init__(self, url: str, reason: str, what: str = "style reference image"):
        shown = url if not url.startswith("data:") else "data URI"
        super().__init__(
            f"Failed to fetch {what} ({shown}): {reason}",
            {"url": shown},
        )


# =============================================================================
# STORE ERRORS
# =============================================================================

class ReferenceLimitExceeded(StudioError):
    """Raised when a character already holds the maximum number of images."""

    def __init__(self, character_id: str, limit: int):
        super().__init__(
            f"Character '{character_id}' already has {limit} reference images",
            {"character_id": character_id, "limit": limit},
        )


class UnknownCharacter(StudioError):
    """Raised when a scene selects character ids that do not exist."""

    def __init__(self, character_ids):
        super().__init__(
            f"Unknown character ids: {', '.join(character_ids)}",
            {"character_ids": list(character_ids)},
        )


class InvalidJobTransition(StudioError):
    """Raised when a job status change is not allowed by the job lifecycle."""

    def __init__(self, job_id: str, current: str, requested: str):
        super().__init__(
            f"Job '{job_id}' cannot go from {current} to {requested}",
            {"job_id": job_id, "current": current, "requested": requested},
        )


class InvalidJobRequest(StudioError):
    """Raised when a job-construction request is missing required input."""
    pass


class ExportError(StudioError):
    """Raised when an export cannot be produced."""
    pass
