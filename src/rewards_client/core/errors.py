"""Error taxonomy for backend calls and the push feed."""

GENERIC_ERROR_MESSAGE = "Something went wrong. Please try again."


class RewardsClientError(Exception):
    """Base error; ``user_message`` is safe to show as-is."""

    retryable: bool = False

    def __init__(self, message: str, *, user_message: str | None = None):
        super().__init__(message)
        self.user_message = user_message or GENERIC_ERROR_MESSAGE


class AuthenticationRequiredError(RewardsClientError):
    """No signed-in user, or the backend refused the token."""

    def __init__(self, message: str = "Authentication required"):
        super().__init__(
            message, user_message="You need to sign in to redeem rewards"
        )


class TransientBackendError(RewardsClientError):
    """Network or server-side failure that is safe to retry."""

    retryable = True

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class RedemptionRejectedError(RewardsClientError):
    """The backend rejected the request on business rules (terminal)."""

    def __init__(self, message: str, *, status_code: int | None = None):
        # Server wording is shown verbatim
        super().__init__(message, user_message=message)
        self.status_code = status_code


class InsufficientPointsError(RedemptionRejectedError):
    """Balance is below the reward cost."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        points_needed: int | None = None,
    ):
        super().__init__(message, status_code=status_code)
        self.points_needed = points_needed


class MalformedResponseError(RewardsClientError):
    """Response payload did not have the expected shape."""


class SubscriptionFailedError(RewardsClientError):
    """The push feed dropped (permission error, transport loss)."""

    retryable = True


class FeedUnavailableError(RewardsClientError):
    """Resubscription backoff is exhausted."""

    def __init__(self, message: str):
        super().__init__(
            message, user_message="Connection is limited. Live updates are paused."
        )
