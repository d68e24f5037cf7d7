from __future__ import annotations


class OnboardingError(Exception):
    """User-correctable failure raised inside the onboarding core.

    ``code`` is the HTTP status a form page is re-rendered with and ``message`` is
    safe to flash to the browser.
    """

    code = 400
    default_message = "Something went wrong. Please try again."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(OnboardingError):
    code = 400
    default_message = "Please check the form and try again."


class ConflictError(OnboardingError):
    code = 409
    default_message = "That choice is no longer available. Please pick another."


class DuplicateUsername(ConflictError):
    default_message = "Username already taken. Please choose another."


class DuplicateEmail(ConflictError):
    default_message = "An account with this email already exists. Please log in."


class IdentityConflict(ConflictError):
    default_message = "This Google account is linked to a different InfoPics account."


class NotFoundError(OnboardingError):
    code = 404
    default_message = "No signup in progress. Please sign up or sign in with Google."


class UpstreamError(OnboardingError):
    code = 502
    default_message = "An upstream service failed. Please try again."


class AuthError(OnboardingError):
    code = 401
    default_message = "Invalid username or password."

    def __init__(self) -> None:
        # Never say which half of the credentials was wrong.
        super().__init__(None)
