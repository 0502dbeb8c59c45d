class BalanceSyncError(Exception):
    """Base class for balance sync errors."""
    pass


class AuthorizationError(BalanceSyncError):
    """
    Caller is not authenticated or not authorized.
    The only error that crosses the engine boundary; it stops polling.
    """
    pass


class CycleCancelledError(BalanceSyncError):
    """A sync cycle observed cancellation; its partial state is discarded."""
    pass


class SourceError(BalanceSyncError):
    """Base class for live source failures."""
    pass


class SourceUnavailableError(SourceError):
    """Transport error, 5xx or an explorer payload reporting failure."""
    pass


class SourceTimeoutError(SourceError):
    """Live fetch did not complete within its deadline."""
    pass


class SourceAuthorizationError(SourceError):
    """Live source rejected the caller's credentials (401/403)."""
    pass


class MalformedBalanceError(BalanceSyncError):
    """A balance value is non-numeric, negative or non-finite."""
    pass


class CacheError(BalanceSyncError):
    """Shared cache or backup I/O failure."""
    pass
