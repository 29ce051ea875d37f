"""
Intercom REST endpoints used by the sync.

Three calls, all returning ApiResult (see api_client):
- search conversations by created_at range (cursor pagination)
- get one conversation with its parts
- get one contact (for location)
"""

import logging
from typing import Optional

from .api_client import ApiClient, ApiResult
from .config import INTERCOM_MAX_PER_PAGE
from .transcript import html_to_text

logger = logging.getLogger(__name__)

# Author types that identify the customer on the opening message
CUSTOMER_AUTHOR_TYPES = {"user", "lead", "contact"}

PRODUCT_MAX_CHARS = 500


class IntercomClient(ApiClient):
    """Async Intercom API client."""

    BASE_URL = "https://api.intercom.io"
    API_VERSION = "2.10"

    def __init__(
        self,
        access_token: str,
        connect_timeout: float = 10.0,
        read_timeout: float = 60.0,
        base_url: Optional[str] = None,
    ):
        super().__init__(
            base_url=base_url or self.BASE_URL,
            access_token=access_token,
            extra_headers={"Intercom-Version": self.API_VERSION},
            connect_timeout=connect_timeout,
            read_timeout=read_timeout,
        )

    @staticmethod
    def build_search_query(
        start_timestamp: int,
        end_timestamp: int,
        per_page: int = INTERCOM_MAX_PER_PAGE,
        starting_after: Optional[str] = None,
    ) -> dict:
        """Search body for conversations created in [start, end] (both inclusive)."""
        pagination = {"per_page": max(1, min(per_page, INTERCOM_MAX_PER_PAGE))}
        if starting_after:
            pagination["starting_after"] = starting_after
        return {
            "query": {
                "operator": "AND",
                "value": [
                    {"field": "created_at", "operator": ">=", "value": start_timestamp},
                    {"field": "created_at", "operator": "<=", "value": end_timestamp},
                ],
            },
            "pagination": pagination,
        }

    async def search_conversations(
        self,
        start_timestamp: int,
        end_timestamp: int,
        per_page: int = INTERCOM_MAX_PER_PAGE,
        starting_after: Optional[str] = None,
    ) -> ApiResult:
        """Fetch one page of the created_at range search."""
        body = self.build_search_query(start_timestamp, end_timestamp, per_page, starting_after)
        return await self.request("POST", "/conversations/search", json_body=body)

    async def get_conversation(self, conversation_id: str) -> ApiResult:
        """Fetch a conversation with its parts, bodies rendered as plain text where possible."""
        return await self.request(
            "GET",
            f"/conversations/{conversation_id}",
            params={"display_as": "plaintext"},
        )

    async def get_contact(self, contact_id: str) -> ApiResult:
        return await self.request("GET", f"/contacts/{contact_id}")


def contact_id_for(conversation: dict) -> Optional[str]:
    """Pick the customer's contact id from a conversation payload."""
    contacts = conversation.get("contacts") or {}
    contact_list = contacts.get("contacts", []) if isinstance(contacts, dict) else []
    if contact_list and contact_list[0].get("id"):
        return str(contact_list[0]["id"])

    author = (conversation.get("source") or {}).get("author") or {}
    if author.get("id") and author.get("type") in CUSTOMER_AUTHOR_TYPES:
        return str(author["id"])
    return None


def location_from_contact(contact: Optional[dict]) -> tuple[Optional[str], Optional[str]]:
    """(country, region) from a contact payload; (None, None) when unknown."""
    if not contact:
        return None, None
    location = contact.get("location") or {}
    return location.get("country") or None, location.get("region") or None


def product_for(conversation: dict) -> str:
    """Opening message as plain text, truncated. Empty string when there is none."""
    body = html_to_text((conversation.get("source") or {}).get("body"))
    return body[:PRODUCT_MAX_CHARS]


def channel_for(conversation: dict) -> Optional[str]:
    """Team the conversation was assigned to, as a string id."""
    team_id = conversation.get("team_assignee_id")
    return str(team_id) if team_id else None
