"""Constants for the StuffTracker integration.

Defines the integration domain, the public integration version and the limits
shared by models, services and the WebSocket API.
"""

from typing import Final

# Integration domain used across all modules
DOMAIN: Final[str] = "stufftracker"

# Public integration version (kept in sync with manifest.json)
INTEGRATION_VERSION: Final[str] = "0.1.0"

# Field limits
NAME_MAX_LENGTH: Final[int] = 200
DESCRIPTION_MAX_LENGTH: Final[int] = 1000
QUERY_MAX_LENGTH: Final[int] = 100

# Search paging
SEARCH_DEFAULT_LIMIT: Final[int] = 50
SEARCH_MAX_LIMIT: Final[int] = 100

# Minimum trigram similarity for approximate name matches
TRIGRAM_SIMILARITY_THRESHOLD: Final[float] = 0.3
