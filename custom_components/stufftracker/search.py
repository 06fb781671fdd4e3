"""Search service: subtree-scoped item search by name."""

from __future__ import annotations

import logging
import uuid

from .const import DOMAIN, QUERY_MAX_LENGTH, SEARCH_DEFAULT_LIMIT, SEARCH_MAX_LIMIT
from .exceptions import ValidationError
from .models import OwnerId, SearchHit, SearchPage
from .repository import ItemRepository, LocationRepository

LOGGER = logging.getLogger(__name__)


def validate_paging(limit: object, offset: object) -> tuple[int, int]:
    """Validate page parameters and return them as ints."""

    if not isinstance(limit, int) or isinstance(limit, bool):
        raise ValidationError("limit must be an integer")
    if limit < 1 or limit > SEARCH_MAX_LIMIT:
        raise ValidationError(f"limit must be between 1 and {SEARCH_MAX_LIMIT}")
    if not isinstance(offset, int) or isinstance(offset, bool) or offset < 0:
        raise ValidationError("offset must be an integer >= 0")
    return limit, offset


def validate_query(query: object) -> str | None:
    if query is None:
        return None
    if not isinstance(query, str):
        raise ValidationError("query must be a string")
    if len(query) > QUERY_MAX_LENGTH:
        raise ValidationError(f"query must be at most {QUERY_MAX_LENGTH} characters")
    return query


class SearchService:
    """Find items by name, optionally restricted to a location subtree."""

    def __init__(self, locations: LocationRepository, items: ItemRepository) -> None:
        self._locations = locations
        self._items = items

    def search(
        self,
        owner_id: OwnerId,
        query: str | None = None,
        location_id: uuid.UUID | str | None = None,
        limit: int = SEARCH_DEFAULT_LIMIT,
        offset: int = 0,
    ) -> SearchPage:
        """Return one page of items matching ``query``.

        When ``location_id`` is given only items stored at that location or
        any of its descendants are considered. An empty or blank query matches
        every item in scope. Each hit carries the breadcrumbs of its location.
        """

        query = validate_query(query)
        limit, offset = validate_paging(limit, offset)

        scope: set[uuid.UUID] | None = None
        if location_id is not None:
            root = self._locations.get_location(owner_id, location_id)
            scope = {root.id, *self._locations.get_descendant_ids(owner_id, root.id)}

        items, total = self._items.search_by_name(owner_id, query, scope, limit, offset)
        hits = [
            SearchHit(
                item=item,
                location_path=self._locations.get_location(owner_id, item.location_id).path_names,
            )
            for item in items
        ]
        LOGGER.debug(
            "Item search",
            extra={
                "domain": DOMAIN,
                "op": "search_items",
                "scoped": scope is not None,
                "total": total,
                "returned": len(hits),
            },
        )
        return SearchPage(items=hits, total=total, has_more=offset + len(hits) < total)
