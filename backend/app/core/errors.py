"""Equipment error taxonomy.

Engine-internal errors (SourceUnavailable, RecordWriteFailed,
HistoryWriteFailed) are absorbed by the reconciliation engine into counters
and logs. Human-facing errors (NotFound, InvalidState, Conflict) propagate to
the caller and are turned into HTTP responses by ``register_error_handlers``.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger("equipment.errors")


class EquipmentError(Exception):
    """Base class for all equipment domain errors."""

    status_code = 500

    def __init__(self, message: str, *, equipment_id: str | None = None):
        self.equipment_id = equipment_id
        super().__init__(message)


class SourceUnavailable(EquipmentError):
    """External MSSQL feed unreachable or timed out. Cycle is skipped."""

    status_code = 503


class RecordWriteFailed(EquipmentError):
    """Local store write failed for a single record."""


class HistoryWriteFailed(EquipmentError):
    """Audit entry could not be written. Never rolls back the main change."""


class NotFound(EquipmentError):
    status_code = 404


class InvalidState(EquipmentError):
    status_code = 400


class Conflict(EquipmentError):
    status_code = 409


async def _equipment_error_handler(request: Request, exc: EquipmentError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(EquipmentError, _equipment_error_handler)
