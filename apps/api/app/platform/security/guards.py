from __future__ import annotations

import logging

from app import audit
from app.authz.schemas import User
from app.metrics import observe_permission_denied
from app.platform.security.errors import PermissionDeniedError


logger = logging.getLogger("app.security")


def require(
    allowed: bool,
    action: str,
    user: User,
    *,
    pipeline_id: str | None = None,
    entity_id: str | None = None,
) -> None:
    """Raise ``PermissionDeniedError`` when ``allowed`` is false, recording the denial first."""

    if allowed:
        return

    observe_permission_denied(action)
    logger.info(
        "permission.denied",
        extra={
            "company_id": user.company_id,
            "pipeline_id": pipeline_id,
            "entity_id": entity_id,
            "action": action,
        },
    )
    audit.record(
        actor_user_id=user.id,
        entity_type="security.permission",
        entity_id=entity_id or pipeline_id or "-",
        action=f"denied.{action}",
        before=None,
        after={"role": user.role, "role_id": user.role_id, "pipeline_id": pipeline_id},
        company_id=user.company_id,
    )
    raise PermissionDeniedError(action, pipeline_id=pipeline_id, entity_id=entity_id)
