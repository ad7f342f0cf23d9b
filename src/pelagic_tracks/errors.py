"""Exception hierarchy shared by the clients, orchestrator and service."""


class PelagicError(Exception):
    """Base class for all pelagic-tracks errors."""


class ConfigurationError(PelagicError, ValueError):
    """Required credentials or settings are missing. Retrying cannot help."""


class UpstreamError(PelagicError):
    """A remote call failed (timeout, connection error, non-2xx status)."""

    def __init__(
        self,
        message: str,
        tier: str | None = None,
        upstream: str | None = None,
        status: int | None = None,
    ):
        super().__init__(message)
        self.tier = tier
        self.upstream = upstream
        self.status = status

    def __str__(self) -> str:
        parts = [super().__str__()]
        if self.tier:
            parts.append(f"tier={self.tier}")
        if self.status is not None:
            parts.append(f"status={self.status}")
        if self.upstream:
            parts.append(f"upstream={self.upstream}")
        return " ".join(parts)


class AllTiersFailedError(PelagicError):
    """Every fallback tier raised; carries the per-tier errors in order."""

    def __init__(self, errors: list[UpstreamError]):
        self.errors = list(errors)
        tiers = ", ".join(str(e) for e in self.errors)
        super().__init__(f"All data sources failed: {tiers}")


class AuthenticationError(PelagicError):
    """Login against the live-location API failed."""


class AuthorizationError(PelagicError):
    """The live-location API rejected the token even after re-authenticating."""


class SnapshotError(PelagicError):
    """A local snapshot file is missing required columns or can't be read."""
