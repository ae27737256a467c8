"""API key validation for the admin endpoints."""

import hmac


class APIKeyValidator:
    """Checks admin API keys against the configured set.

    Keys are compared in constant time so response timing does not reveal
    how much of a guessed key matched.
    """

    def __init__(self, api_keys: list[str]) -> None:
        """Initialize validator with the accepted keys.

        Args:
            api_keys: Accepted API key strings

        Raises:
            ValueError: If no non-blank key is provided
        """
        keys = [key.strip() for key in api_keys if key and key.strip()]
        if not keys:
            raise ValueError("At least one API key must be provided")

        self._keys = [key.encode("utf-8") for key in keys]

    def validate(self, api_key: str) -> bool:
        """Validate an API key.

        Args:
            api_key: Key sent by the caller

        Returns:
            bool: True if the key matches a configured key
        """
        candidate = api_key.encode("utf-8")
        matched = False
        for key in self._keys:
            matched |= hmac.compare_digest(candidate, key)
        return matched
