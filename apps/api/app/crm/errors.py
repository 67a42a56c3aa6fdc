from __future__ import annotations

import uuid
from typing import Any


class CRMError(Exception):
    code = "crm_error"

    def __init__(self, message: str, *, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class NotFoundError(CRMError):
    code = "not_found"

    def __init__(self, entity: str, entity_id: uuid.UUID | str) -> None:
        super().__init__(f"{entity} not found", details={"entity": entity, "id": str(entity_id)})
        self.entity = entity
        self.entity_id = entity_id


class InvalidStageError(CRMError):
    code = "invalid_stage"


class InvalidPipelineError(CRMError):
    code = "invalid_pipeline"


class UpdateError(CRMError):
    """The primary write of a workflow failed and was rolled back."""

    code = "update_failed"
