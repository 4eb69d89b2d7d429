from __future__ import annotations

import logging
from collections.abc import Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from app import audit
from app.authz.schemas import RoleDefinition, User
from app.core.errors import NotFoundError, ValidationError
from app.pipelines.models import CRMPipelineConfig
from app.pipelines.schemas import PipelineConfig, PipelineCreate, PipelineUpdate, now_ms
from app.pipelines.validation import parse_pipeline_config
from app.platform.security.fls import filter_fields_for_role
from app.platform.security.guards import require
from app.platform.security.policies import can_access_pipeline, can_manage_pipelines
from app.storage.base import StorageAdapter


logger = logging.getLogger("app.pipelines")


class PipelineService:
    entity_type = "crm.pipeline"

    def create_pipeline(
        self,
        session: Session,
        user: User,
        roles: Sequence[RoleDefinition],
        dto: PipelineCreate,
    ) -> PipelineConfig:
        require(can_manage_pipelines(user, roles), "pipelines.create", user)

        payload = dto.model_dump(exclude_none=True)
        payload["company_id"] = user.company_id
        config = parse_pipeline_config(payload)
        self._ensure_unique(session, config)

        session.add(
            CRMPipelineConfig(
                company_id=config.company_id,
                id=config.id,
                entity_type=config.entity_type,
                name=config.name,
                is_active=config.is_active,
                config=config.model_dump(mode="json"),
                created_at=config.created_at,
                updated_at=config.updated_at,
            )
        )
        audit.record(
            actor_user_id=user.id,
            entity_type=self.entity_type,
            entity_id=config.id,
            action="create",
            before=None,
            after={"name": config.name, "entity_type": config.entity_type, "stages": config.stage_ids()},
            company_id=user.company_id,
        )
        session.commit()
        logger.info(
            "pipeline.created",
            extra={"company_id": user.company_id, "pipeline_id": config.id, "entity_type": config.entity_type},
        )
        return config

    def get_pipeline(self, session: Session, company_id: str, pipeline_id: str) -> PipelineConfig:
        return PipelineConfig.model_validate(self._get_row(session, company_id, pipeline_id).config)

    def read_pipeline(
        self,
        session: Session,
        user: User,
        roles: Sequence[RoleDefinition],
        pipeline_id: str,
    ) -> PipelineConfig:
        """The pipeline as ``user`` may see it: access enforced, financial fields hidden."""

        pipeline = self.get_pipeline(session, user.company_id, pipeline_id)
        require(can_access_pipeline(user, pipeline.id, roles), "read", user, pipeline_id=pipeline.id)
        return pipeline.model_copy(update={"fields": filter_fields_for_role(pipeline.fields, user, roles)})

    def list_pipelines(
        self,
        session: Session,
        user: User,
        roles: Sequence[RoleDefinition],
        *,
        include_inactive: bool = False,
    ) -> list[PipelineConfig]:
        stmt = (
            select(CRMPipelineConfig)
            .where(CRMPipelineConfig.company_id == user.company_id)
            .order_by(CRMPipelineConfig.created_at.asc(), CRMPipelineConfig.id.asc())
        )
        if not include_inactive:
            stmt = stmt.where(CRMPipelineConfig.is_active.is_(True))

        visible: list[PipelineConfig] = []
        for row in session.scalars(stmt).all():
            pipeline = PipelineConfig.model_validate(row.config)
            if not can_access_pipeline(user, pipeline.id, roles):
                continue
            visible.append(pipeline.model_copy(update={"fields": filter_fields_for_role(pipeline.fields, user, roles)}))
        return visible

    def update_pipeline(
        self,
        session: Session,
        user: User,
        roles: Sequence[RoleDefinition],
        pipeline_id: str,
        dto: PipelineUpdate,
    ) -> PipelineConfig:
        require(can_manage_pipelines(user, roles), "pipelines.update", user, pipeline_id=pipeline_id)
        row = self._get_row(session, user.company_id, pipeline_id)
        before = dict(row.config)

        payload = dict(row.config)
        payload.update(dto.model_dump(exclude_unset=True, mode="json"))
        payload["updated_at"] = now_ms()
        config = parse_pipeline_config(payload)

        row.name = config.name
        row.is_active = config.is_active
        row.config = config.model_dump(mode="json")
        row.updated_at = config.updated_at
        audit.record(
            actor_user_id=user.id,
            entity_type=self.entity_type,
            entity_id=pipeline_id,
            action="update",
            before={"name": before.get("name"), "stages": [stage["id"] for stage in before.get("stages", [])]},
            after={"name": config.name, "stages": config.stage_ids()},
            company_id=user.company_id,
        )
        session.commit()
        return config

    def delete_pipeline(
        self,
        session: Session,
        user: User,
        roles: Sequence[RoleDefinition],
        pipeline_id: str,
        adapter: StorageAdapter,
    ) -> None:
        require(can_manage_pipelines(user, roles), "pipelines.delete", user, pipeline_id=pipeline_id)
        row = self._get_row(session, user.company_id, pipeline_id)

        remaining = adapter.get_stats(row.entity_type).total
        if remaining > 0:
            raise ValidationError(
                "pipeline still has entities",
                errors={"pipeline": [f"{remaining} entities reference this pipeline"]},
                pipeline_id=pipeline_id,
            )

        audit.record(
            actor_user_id=user.id,
            entity_type=self.entity_type,
            entity_id=pipeline_id,
            action="delete",
            before={"name": row.name, "entity_type": row.entity_type},
            after=None,
            company_id=user.company_id,
        )
        session.delete(row)
        session.commit()

    def _ensure_unique(self, session: Session, config: PipelineConfig) -> None:
        clash = session.scalar(
            select(CRMPipelineConfig).where(
                CRMPipelineConfig.company_id == config.company_id,
                (CRMPipelineConfig.id == config.id) | (CRMPipelineConfig.entity_type == config.entity_type),
            )
        )
        if clash is None:
            return
        if clash.id == config.id:
            raise ValidationError("pipeline already exists", errors={"id": ["pipeline id is already in use"]})
        raise ValidationError(
            "entity type already has a pipeline",
            errors={"entity_type": [f"'{config.entity_type}' is already configured"]},
        )

    def _get_row(self, session: Session, company_id: str, pipeline_id: str) -> CRMPipelineConfig:
        row = session.scalar(
            select(CRMPipelineConfig).where(
                CRMPipelineConfig.company_id == company_id,
                CRMPipelineConfig.id == pipeline_id,
            )
        )
        if row is None:
            raise NotFoundError("pipeline not found", pipeline_id=pipeline_id)
        return row


pipeline_service = PipelineService()
