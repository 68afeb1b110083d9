from __future__ import annotations

from typing import Any, Iterable


class DomainError(Exception):
    """
    Base for errors raised by services and rendered by the API layer.
    `details` is a list of {"field", "message"} dicts (field may be None).
    """
    code = "domain_error"
    status_code = 400

    def __init__(self, message: str, *, details: list[dict[str, Any]] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or []

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class ValidationError(DomainError):
    code = "validation_error"
    status_code = 422

    @classmethod
    def missing_fields(cls, fields: Iterable[str], *, prefix: str = "") -> "ValidationError":
        names = [f"{prefix}{f}" for f in fields]
        return cls(
            "Missing required fields: " + ", ".join(names),
            details=[{"field": n, "message": "field is required"} for n in names],
        )

    @classmethod
    def for_field(cls, field: str, message: str) -> "ValidationError":
        return cls(f"{field}: {message}", details=[{"field": field, "message": message}])

    @classmethod
    def from_pydantic(cls, exc: Any, *, prefix: str = "", drop_roots: tuple[str, ...] = ()) -> "ValidationError":
        details = []
        for err in exc.errors():
            parts = list(err.get("loc", ()))
            if parts and parts[0] in drop_roots:
                parts = parts[1:]
            loc = ".".join(str(p) for p in parts)
            details.append({"field": f"{prefix}{loc}" if loc else prefix.rstrip(".") or None, "message": err.get("msg", "invalid")})
        fields = ", ".join(d["field"] for d in details if d["field"])
        return cls(f"Invalid fields: {fields}" if fields else "Invalid request", details=details)


class InvalidStateError(DomainError):
    code = "invalid_state"
    status_code = 409


class NotFoundError(DomainError):
    code = "not_found"
    status_code = 404


class ForbiddenError(DomainError):
    code = "forbidden"
    status_code = 403


class ConfigurationError(DomainError):
    """Tenant/operator configuration problem. Permanent: callbacks are skipped, never retried."""
    code = "configuration_error"
    status_code = 422

    @classmethod
    def missing_url(cls, tenant_id: str) -> "ConfigurationError":
        return cls(f"No callback URL configured for tenant {tenant_id}")

    @classmethod
    def missing_schema(cls, tenant_id: str) -> "ConfigurationError":
        return cls(f"No payload schema configured for tenant {tenant_id}")

    @classmethod
    def missing_source(cls, source_type: str, source_id: str) -> "ConfigurationError":
        return cls(f"Callback source {source_type} {source_id} no longer exists")

    @classmethod
    def unreadable_credential(cls, tenant_id: str) -> "ConfigurationError":
        return cls(f"Callback credential for tenant {tenant_id} cannot be decrypted")


class TransientDeliveryError(DomainError):
    """Non-2xx response or transport failure while posting a callback. Retried by the callback worker."""
    code = "delivery_failed"
    status_code = 502

    def __init__(self, message: str, *, status_code: int | None = None, error_code: str | None = None):
        super().__init__(message)
        self.http_status = status_code
        self.error_code = error_code

    @classmethod
    def send_failed(cls, url: str, status_code: int) -> "TransientDeliveryError":
        return cls(f"Callback to {url} failed with HTTP status {status_code}", status_code=status_code, error_code=f"HTTP_{status_code}")

    @classmethod
    def timeout(cls, url: str, timeout_seconds: float) -> "TransientDeliveryError":
        return cls(f"Callback to {url} timed out after {timeout_seconds:g} seconds", error_code="TIMEOUT")

    @classmethod
    def network_error(cls, url: str, error: str) -> "TransientDeliveryError":
        return cls(f"Network error while calling {url}: {error}", error_code="REQUEST_ERROR")
