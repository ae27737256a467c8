"""FastAPI dependency for admin API key checks."""

from typing import Annotated

from fastapi import Header, HTTPException

from storefront_webhook_service.auth.api_key_validator import APIKeyValidator


def get_api_key_from_header(
    x_api_key: Annotated[str | None, Header()] = None,
    validator: APIKeyValidator | None = None,
) -> str:
    """Extract and check the X-API-Key header.

    Args:
        x_api_key: Value of the X-API-Key header
        validator: Validator holding the accepted keys; None accepts any present key

    Returns:
        str: The accepted API key

    Raises:
        HTTPException: 401 if the key is missing or not accepted
    """
    if not x_api_key:
        raise HTTPException(status_code=401, detail="Missing API key")

    if validator is not None and not validator.validate(x_api_key):
        raise HTTPException(status_code=401, detail="Invalid API key")

    return x_api_key
