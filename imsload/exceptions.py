"""Exceptions raised while preparing or wrapping up a run.

Only setup and validation problems are raised; failures inside a scenario
iteration are recorded as samples and check outcomes instead. Each error
carries structured context (the auth URL and HTTP status, the reference file
and entity list, the offending profile field) and an operator hint, which the
CLI renders under the message.
"""

from __future__ import annotations

from typing import Any

CREDENTIAL_STATUSES = frozenset({400, 401, 403})


class ImsLoadError(Exception):
    """Base exception for all imsload errors.

    Attributes:
        message: Human-readable error description
        context: Structured details (rendered by the CLI, logged as error_context)
        original_error: Exception that caused this error (if any)
    """

    def __init__(
        self,
        message: str,
        *,
        context: dict[str, Any] | None = None,
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}
        self.original_error = original_error

    def __str__(self) -> str:
        base = self.message
        if self.context:
            ctx_str = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            base = f"{base} [{ctx_str}]"
        if self.original_error:
            base = f"{base} (caused by: {type(self.original_error).__name__}: {self.original_error})"
        return base

    @property
    def hint(self) -> str | None:
        return None

    def with_context(self, **kwargs: Any) -> "ImsLoadError":
        """Add context to this error and return self for chaining."""
        self.context.update(kwargs)
        return self

    def details(self) -> list[str]:
        """Indented "key: value" lines for terminal output."""
        lines = [f"{k}: {v}" for k, v in self.context.items()]
        if self.original_error:
            lines.append(f"caused by: {type(self.original_error).__name__}: {self.original_error}")
        return lines


class ImsLoadConfigError(ImsLoadError):
    """A profile, environment or config file is invalid.

    Common causes: config file not found or invalid YAML, max_workers lower
    than preallocated_workers, an empty stage list, an unknown environment or
    missing credentials.
    """

    @property
    def hint(self) -> str | None:
        if "known" in self.context:
            return "Pick one of: " + ", ".join(str(k) for k in self.context["known"])
        if "environment" in self.context:
            env = str(self.context["environment"]).upper()
            return f"Set IMSLOAD_USERNAME/IMSLOAD_PASSWORD or IMSLOAD_{env}_CLIENT_SECRET."
        if "path" in self.context:
            return "Fix the config file, or run without -f to use the built-in profile."
        return None


class ImsLoadAuthError(ImsLoadError):
    """The session could not be established or refreshed.

    Attributes:
        url: Auth endpoint that was called
        status_code: HTTP status of the auth response (None for transport errors)
    """

    def __init__(
        self,
        message: str,
        *,
        url: str | None = None,
        status_code: int | None = None,
        context: dict[str, Any] | None = None,
        original_error: Exception | None = None,
    ) -> None:
        ctx: dict[str, Any] = {}
        if url is not None:
            ctx["url"] = url
        if status_code is not None:
            ctx["status"] = status_code
        super().__init__(message, context={**ctx, **(context or {})}, original_error=original_error)
        self.url = url
        self.status_code = status_code

    @property
    def credentials_rejected(self) -> bool:
        return self.status_code in CREDENTIAL_STATUSES

    @property
    def hint(self) -> str | None:
        if self.credentials_rejected:
            return "Credentials were rejected: check IMSLOAD_USERNAME/IMSLOAD_PASSWORD or IMSLOAD_<ENV>_CLIENT_SECRET."
        if self.status_code is None and self.original_error is not None:
            return "Auth endpoint unreachable: check IMSLOAD_AUTH_URL / IMSLOAD_BASE_URL and network access."
        return "Unexpected auth response: check that IMSLOAD_AUTH_URL points at the login endpoint."


class ImsLoadRunnerError(ImsLoadError):
    """A run cannot start or its output cannot be written.

    Attributes:
        path: Reference data or report file involved
        entity: Reference entity list at fault (securities, counterparties, ...)
    """

    def __init__(
        self,
        message: str,
        *,
        path: str | None = None,
        entity: str | None = None,
        context: dict[str, Any] | None = None,
        original_error: Exception | None = None,
    ) -> None:
        ctx: dict[str, Any] = {}
        if path is not None:
            ctx["path"] = path
        if entity is not None:
            ctx["entity"] = entity
        super().__init__(message, context={**ctx, **(context or {})}, original_error=original_error)
        self.path = path
        self.entity = entity

    @property
    def hint(self) -> str | None:
        if self.entity is not None:
            return f"Every reference data file needs a non-empty '{self.entity}' list of objects."
        if self.path is not None:
            return "Check --reference-data and --output paths."
        return None
