class DossierError(Exception):
    """
    Base exception for all evidence-pack failures.
    """

    pass


class NotFoundError(DossierError):
    """
    Raised when the listing an evidence pack is requested for does not exist.

    Terminal: no partial pack is produced and no audit record is written.
    """

    def __init__(self, listing_id: str) -> None:
        super().__init__(f"Listing not found: {listing_id}")
        self.listing_id = listing_id


class AccessDeniedError(DossierError):
    """
    Raised when the access gate denies a request.
    """

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class UnauthorizedError(AccessDeniedError):
    """
    No authenticated requester.
    """

    pass


class ForbiddenError(AccessDeniedError):
    """
    Authenticated requester without access to the listing.
    """

    pass


class SerializationError(DossierError):
    """
    Raised when the canonical codec is given a value with no canonical form.

    Pack contents are controlled data shapes, so this indicates a programming
    error rather than a user-facing condition.
    """

    pass


class AuditWriteError(DossierError):
    """
    Raised by audit sinks when a record cannot be written.

    Logged by the dispatcher; never invalidates an already-built pack.
    """

    pass


class SourceFetchError(DossierError):
    """
    Raised when one of the concurrent sub-fetches of a pack build fails.
    """

    def __init__(self, fetch_name: str, cause: BaseException) -> None:
        super().__init__(f"{fetch_name} fetch failed: {cause.__class__.__name__}: {cause}")
        self.fetch_name = fetch_name
