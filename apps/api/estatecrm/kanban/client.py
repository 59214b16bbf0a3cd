from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Literal

import httpx

from estatecrm.kanban.board import Card, Column, EntityKind, build_board, card_from_row


logger = logging.getLogger("estatecrm.kanban")

LOGIN_URL = "/api/login"
REDIRECT_DELAY_SECONDS = 0.5
GENERIC_ERROR_MESSAGE = "Failed to update status. Please try again."


class CrmApiError(Exception):
    def __init__(self, status_code: int, payload: Any) -> None:
        super().__init__(f"CRM API returned {status_code}")
        self.status_code = status_code
        self.payload = payload


class CrmApiClient:
    """Thin JSON client over the CRM routes. Works with any ``httpx.Client``, including a test client."""

    def __init__(self, http: httpx.Client) -> None:
        self._http = http

    def list(self, entity: EntityKind) -> list[dict[str, Any]]:
        return self._request("GET", f"/api/{entity}")

    def update_status(self, entity: EntityKind, item_id: str, status: str) -> dict[str, Any]:
        return self._request("PATCH", f"/api/{entity}/{item_id}/status", json={"status": status})

    def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        response = self._http.request(method, url, **kwargs)
        if response.status_code >= 400:
            try:
                payload = response.json()
            except ValueError:
                payload = response.text
            raise CrmApiError(response.status_code, payload)
        return response.json()


@dataclass
class DropOutcome:
    kind: Literal["unchanged", "moved", "redirect", "error"]
    message: str | None = None
    login_url: str | None = None
    redirect_delay: float | None = None
    card: Card | None = None


class KanbanMover:
    """Board state for one entity kind plus the drop handler that persists a column change."""

    def __init__(self, api: CrmApiClient, entity: EntityKind, columns: tuple[Column, ...]) -> None:
        self.api = api
        self.entity = entity
        self.columns = columns
        self._board: dict[str, list[Card]] | None = None

    def board(self) -> dict[str, list[Card]]:
        if self._board is None:
            rows = self.api.list(self.entity)
            self._board = build_board((card_from_row(self.entity, row) for row in rows), self.columns)
        return self._board

    def invalidate(self) -> None:
        self._board = None

    def drop(self, card: Card, target_status: str) -> DropOutcome:
        if card.status == target_status:
            return DropOutcome(kind="unchanged", card=card)

        try:
            updated = self.api.update_status(self.entity, card.id, target_status)
        except CrmApiError as exc:
            self.invalidate()
            if exc.status_code == 401:
                return DropOutcome(
                    kind="redirect",
                    message="You are logged out. Logging in again...",
                    login_url=LOGIN_URL,
                    redirect_delay=REDIRECT_DELAY_SECONDS,
                )
            logger.warning(
                "kanban.drop_failed",
                extra={"entity_type": self.entity, "entity_id": card.id, "status_code": exc.status_code},
            )
            return DropOutcome(kind="error", message=GENERIC_ERROR_MESSAGE)
        except httpx.HTTPError as exc:
            self.invalidate()
            logger.warning(
                "kanban.drop_failed",
                extra={"entity_type": self.entity, "entity_id": card.id, "error": str(exc)},
            )
            return DropOutcome(kind="error", message=GENERIC_ERROR_MESSAGE)

        self.invalidate()
        return DropOutcome(kind="moved", card=card_from_row(self.entity, updated))
