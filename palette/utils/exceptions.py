"""
HTTP Exception Factories

Centralized exception creation with consistent error messages and status codes.

Usage:
    from palette.utils.exceptions import APIExceptions

    raise APIExceptions.unauthorized()
    raise APIExceptions.payment_required(credits=0)
"""

import logging
from typing import Any

from fastapi import HTTPException

logger = logging.getLogger(__name__)


class APIExceptions:
    """Factory class for creating standardized HTTP exceptions."""

    @staticmethod
    def unauthorized(detail: str = "Unauthorized") -> HTTPException:
        """401 Unauthorized - Authentication failed."""
        return HTTPException(status_code=401, detail=detail)

    @staticmethod
    def payment_required(
        detail: str = "Insufficient credits", credits: int | None = None
    ) -> HTTPException:
        """
        402 Payment Required - User has insufficient credits.

        Args:
            detail: Custom error message
            credits: Optional current credit balance

        Returns:
            HTTPException with status 402
        """
        if credits is not None:
            detail = f"{detail}. Current balance: {credits}"
        return HTTPException(status_code=402, detail=detail)

    @staticmethod
    def forbidden(detail: str = "Access forbidden") -> HTTPException:
        """403 Forbidden - User doesn't have permission."""
        return HTTPException(status_code=403, detail=detail)

    @staticmethod
    def not_found(resource: str = "Resource", resource_id: Any | None = None) -> HTTPException:
        """
        404 Not Found - Resource doesn't exist.

        Args:
            resource: Type of resource (e.g., "User", "Team", "Job")
            resource_id: Optional ID of the resource
        """
        detail = f"{resource} not found"
        if resource_id is not None:
            detail += f": {resource_id}"
        return HTTPException(status_code=404, detail=detail)

    @staticmethod
    def conflict(detail: str = "Conflict") -> HTTPException:
        """409 Conflict - Request clashes with current state (e.g. already in a team)."""
        return HTTPException(status_code=409, detail=detail)

    @staticmethod
    def rate_limited(
        retry_after: int | None = None,
        detail: str = "Rate limit exceeded",
        reason: str | None = None,
    ) -> HTTPException:
        """
        429 Too Many Requests - Rate limit exceeded.

        Args:
            retry_after: Seconds until retry is allowed
            detail: Custom error message
            reason: Optional reason (e.g. which scope denied the call)

        Returns:
            HTTPException with status 429 and optional Retry-After header
        """
        if reason:
            detail = f"{detail}: {reason}"

        headers = {"Retry-After": str(retry_after)} if retry_after else None
        return HTTPException(status_code=429, detail=detail, headers=headers)

    @staticmethod
    def bad_request(
        detail: str = "Bad request", errors: dict[str, Any] | None = None
    ) -> HTTPException:
        """400 Bad Request - Invalid request data."""
        if errors:
            return HTTPException(status_code=400, detail={"message": detail, "errors": errors})
        return HTTPException(status_code=400, detail=detail)

    @staticmethod
    def internal_error(
        operation: str = "request", error: Exception | None = None
    ) -> HTTPException:
        """
        500 Internal Server Error.

        The underlying error is logged, never echoed to the client.
        """
        if error is not None:
            logger.error(f"Internal error during {operation}: {error}", exc_info=error)
        return HTTPException(status_code=500, detail=f"Internal error during {operation}")

    @staticmethod
    def service_error(detail: str = "Upstream service failed", status_code: int = 502) -> HTTPException:
        """502 Bad Gateway - An upstream dependency (e.g. image generation) failed."""
        return HTTPException(status_code=status_code, detail=detail)

    @staticmethod
    def service_unavailable(service: str = "Service", retry_after: int | None = None) -> HTTPException:
        """503 Service Unavailable."""
        headers = {"Retry-After": str(retry_after)} if retry_after else None
        return HTTPException(
            status_code=503, detail=f"{service} is temporarily unavailable", headers=headers
        )
