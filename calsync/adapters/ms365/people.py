"""
MS365 people lookup.

Only what attendee resolution needs: find the best email match for a display
name. Tries the relevance-ranked /me/people search first, then falls back to
a directory prefix search over /users.
"""

import logging
from typing import Optional, Protocol, TypedDict

from ._auth import GraphClient


logger = logging.getLogger(__name__)


class PersonMatch(TypedDict):
    email: str
    name: str


class PeopleLookup(Protocol):
    async def search_by_name(self, name: str) -> Optional[PersonMatch]:
        ...


def _odata_literal(value: str) -> str:
    return value.replace("'", "''")


def _first_email(person: dict) -> Optional[str]:
    for email in person.get("scoredEmailAddresses") or person.get("emailAddresses") or []:
        if email.get("address"):
            return email["address"]
    return person.get("mail") or person.get("userPrincipalName")


class GraphPeopleLookup:
    """
    PeopleLookup backed by Microsoft Graph.

    Example:
        lookup = GraphPeopleLookup(client)
        match = await lookup.search_by_name("Ada Lovelace")
        # {"email": "ada@contoso.com", "name": "Ada Lovelace"} or None
    """

    def __init__(self, client: GraphClient):
        self.client = client

    async def search_by_name(self, name: str) -> Optional[PersonMatch]:
        response = await self.client.get(
            "/me/people",
            params={"$search": f'"{name}"', "$top": 1}
        )
        for person in response.get("value") or []:
            email = _first_email(person)
            if email:
                return PersonMatch(email=email, name=person.get("displayName") or name)

        literal = _odata_literal(name)
        response = await self.client.get(
            "/users",
            params={
                "$filter": (
                    f"startswith(displayName,'{literal}') or "
                    f"startswith(givenName,'{literal}') or "
                    f"startswith(surname,'{literal}')"
                ),
                "$top": 1
            }
        )
        for user in response.get("value") or []:
            email = _first_email(user)
            if email:
                return PersonMatch(email=email, name=user.get("displayName") or name)

        logger.debug("No people match for a name of length %d", len(name))
        return None
