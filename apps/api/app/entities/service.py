from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from app import audit
from app.authz.schemas import PipelineAction, RoleDefinition, User
from app.core.errors import NotFoundError, ValidationError
from app.pipelines.schemas import FieldDefinition, PipelineConfig
from app.pipelines.validation import validate_record
from app.platform.security.fls import (
    filter_data_for_role,
    filter_fields_for_role,
    filter_record_for_role,
    validate_financial_write,
)
from app.platform.security.guards import require
from app.platform.security.policies import (
    can_access_pipeline,
    can_perform_action,
    can_view_financial_data,
    get_visible_stages,
)
from app.storage.base import RESERVED_KEYS, Entity, PaginatedResult, QueryFilters, StageStats, StorageAdapter
from app.storage.query import matches_search, paginate


_FETCH_PAGE_SIZE = 500


class EntityService:
    """Permission-aware façade over one storage adapter.

    Every call re-evaluates the caller's permissions. Denials raise
    ``PermissionDeniedError``, missing or hidden entities raise ``NotFoundError``
    and adapter failures propagate as ``TransportError``.
    """

    def __init__(self, adapter: StorageAdapter) -> None:
        self.adapter = adapter

    def visible_fields(
        self,
        user: User,
        roles: Sequence[RoleDefinition],
        pipeline: PipelineConfig,
    ) -> list[FieldDefinition]:
        self._require_access(user, roles, pipeline)
        return filter_fields_for_role(pipeline.sorted_fields(), user, roles)

    def list_entities(
        self,
        user: User,
        roles: Sequence[RoleDefinition],
        pipeline: PipelineConfig,
        filters: QueryFilters | None = None,
    ) -> PaginatedResult:
        self._require_access(user, roles, pipeline)
        filters = filters or QueryFilters()
        validate_financial_write(
            dict.fromkeys(self._filtered_keys(filters)),
            pipeline.fields,
            user,
            roles,
            resource=pipeline.entity_type,
        )

        stages = self._effective_stages(user, roles, pipeline, filters.stage_list())
        if stages is not None and not stages:
            return PaginatedResult(items=[], total=0, page=filters.page, limit=filters.limit, total_pages=0)
        scoped = filters.model_copy(update={"stage": stages})

        if scoped.search and not can_view_financial_data(user, roles) and pipeline.financial_field_names():
            # Search must not match on values the caller cannot see.
            everything = self._fetch_all(pipeline.entity_type, scoped.model_copy(update={"search": None}))
            visible = filter_data_for_role(everything, pipeline.fields, user, roles)
            matched = [entity for entity in visible if matches_search(entity, scoped.search)]
            return paginate(matched, scoped.page, scoped.limit)

        result = self.adapter.get_all(pipeline.entity_type, scoped)
        return result.model_copy(update={"items": filter_data_for_role(result.items, pipeline.fields, user, roles)})

    def get_entity(
        self,
        user: User,
        roles: Sequence[RoleDefinition],
        pipeline: PipelineConfig,
        entity_id: str,
    ) -> Entity:
        self._require_access(user, roles, pipeline, entity_id=entity_id)
        entity = self._load_visible(user, roles, pipeline, entity_id)
        return filter_record_for_role(entity, pipeline.fields, user, roles)

    def create_entity(
        self,
        user: User,
        roles: Sequence[RoleDefinition],
        pipeline: PipelineConfig,
        data: dict[str, Any],
    ) -> Entity:
        self._require_action(user, roles, pipeline, PipelineAction.CREATE)
        payload = {key: value for key, value in data.items() if key not in RESERVED_KEYS}
        validate_financial_write(payload, pipeline.fields, user, roles, resource=pipeline.entity_type)

        stage = payload.get("stage") or pipeline.first_stage_id
        if pipeline.get_stage(stage) is None:
            raise ValidationError("unknown stage", errors={"stage": [f"'{stage}' is not a stage of this pipeline"]})
        require(
            stage in get_visible_stages(user, pipeline, roles),
            PipelineAction.CREATE.value,
            user,
            pipeline_id=pipeline.id,
        )
        payload["stage"] = stage

        for field in pipeline.fields:
            if field.name not in payload and field.default_value is not None:
                payload[field.name] = field.default_value
        self._validate(payload, pipeline, partial=False)

        entity = self.adapter.create(pipeline.entity_type, payload)
        self._audit(user, pipeline, entity["id"], "create", None, entity)
        return filter_record_for_role(entity, pipeline.fields, user, roles)

    def update_entity(
        self,
        user: User,
        roles: Sequence[RoleDefinition],
        pipeline: PipelineConfig,
        entity_id: str,
        patch: dict[str, Any],
    ) -> Entity:
        self._require_action(user, roles, pipeline, PipelineAction.EDIT, entity_id=entity_id)
        current = self._load_visible(user, roles, pipeline, entity_id)
        changes = {key: value for key, value in patch.items() if key not in RESERVED_KEYS}
        validate_financial_write(changes, pipeline.fields, user, roles, resource=pipeline.entity_type)

        target_stage = changes.get("stage")
        if "stage" in changes and target_stage != current.get("stage"):
            self._require_action(user, roles, pipeline, PipelineAction.MOVE, entity_id=entity_id)
            self._check_move(user, roles, pipeline, current, target_stage)
        self._validate(changes, pipeline, partial=True)

        updated = self.adapter.update(pipeline.entity_type, entity_id, changes)
        self._audit(user, pipeline, entity_id, "update", current, updated)
        return filter_record_for_role(updated, pipeline.fields, user, roles)

    def delete_entity(
        self,
        user: User,
        roles: Sequence[RoleDefinition],
        pipeline: PipelineConfig,
        entity_id: str,
    ) -> None:
        self._require_action(user, roles, pipeline, PipelineAction.DELETE, entity_id=entity_id)
        current = self._load_visible(user, roles, pipeline, entity_id)
        self.adapter.delete(pipeline.entity_type, entity_id)
        self._audit(user, pipeline, entity_id, "delete", current, None)

    def move_stage(
        self,
        user: User,
        roles: Sequence[RoleDefinition],
        pipeline: PipelineConfig,
        entity_id: str,
        stage: str,
    ) -> Entity:
        self._require_action(user, roles, pipeline, PipelineAction.MOVE, entity_id=entity_id)
        current = self._load_visible(user, roles, pipeline, entity_id)
        self._check_move(user, roles, pipeline, current, stage)

        moved = self.adapter.move_stage(pipeline.entity_type, entity_id, stage)
        self._audit(user, pipeline, entity_id, "move_stage", {"stage": current.get("stage")}, {"stage": stage})
        return filter_record_for_role(moved, pipeline.fields, user, roles)

    def get_by_stage(
        self,
        user: User,
        roles: Sequence[RoleDefinition],
        pipeline: PipelineConfig,
        stage: str,
    ) -> list[Entity]:
        self._require_access(user, roles, pipeline)
        if stage not in get_visible_stages(user, pipeline, roles) and self._is_restricted(user, roles, pipeline):
            return []
        entities = self.adapter.get_by_stage(pipeline.entity_type, stage)
        return filter_data_for_role(entities, pipeline.fields, user, roles)

    def get_stats(
        self,
        user: User,
        roles: Sequence[RoleDefinition],
        pipeline: PipelineConfig,
    ) -> StageStats:
        self._require_access(user, roles, pipeline)
        stats = self.adapter.get_stats(pipeline.entity_type)
        if not self._is_restricted(user, roles, pipeline):
            return stats
        visible = set(get_visible_stages(user, pipeline, roles))
        by_stage = {stage: count for stage, count in stats.by_stage.items() if stage in visible}
        return StageStats(total=sum(by_stage.values()), by_stage=by_stage)

    def _require_access(
        self,
        user: User,
        roles: Sequence[RoleDefinition],
        pipeline: PipelineConfig,
        *,
        entity_id: str | None = None,
    ) -> None:
        require(
            can_access_pipeline(user, pipeline.id, roles),
            "read",
            user,
            pipeline_id=pipeline.id,
            entity_id=entity_id,
        )

    def _require_action(
        self,
        user: User,
        roles: Sequence[RoleDefinition],
        pipeline: PipelineConfig,
        action: PipelineAction,
        *,
        entity_id: str | None = None,
    ) -> None:
        self._require_access(user, roles, pipeline, entity_id=entity_id)
        require(
            can_perform_action(user, pipeline.id, action, roles),
            action.value,
            user,
            pipeline_id=pipeline.id,
            entity_id=entity_id,
        )

    def _is_restricted(self, user: User, roles: Sequence[RoleDefinition], pipeline: PipelineConfig) -> bool:
        return set(get_visible_stages(user, pipeline, roles)) != set(pipeline.stage_ids())

    def _effective_stages(
        self,
        user: User,
        roles: Sequence[RoleDefinition],
        pipeline: PipelineConfig,
        requested: list[str] | None,
    ) -> list[str] | None:
        if not self._is_restricted(user, roles, pipeline):
            return requested
        visible = get_visible_stages(user, pipeline, roles)
        if requested is None:
            return visible
        return [stage for stage in requested if stage in visible]

    def _load_visible(
        self,
        user: User,
        roles: Sequence[RoleDefinition],
        pipeline: PipelineConfig,
        entity_id: str,
    ) -> Entity:
        entity = self.adapter.get_by_id(pipeline.entity_type, entity_id)
        if entity is None:
            raise NotFoundError("entity not found", pipeline_id=pipeline.id, entity_id=entity_id)
        if self._is_restricted(user, roles, pipeline) and entity.get("stage") not in get_visible_stages(
            user, pipeline, roles
        ):
            raise NotFoundError("entity not found", pipeline_id=pipeline.id, entity_id=entity_id)
        return entity

    def _check_move(
        self,
        user: User,
        roles: Sequence[RoleDefinition],
        pipeline: PipelineConfig,
        current: Entity,
        target: Any,
    ) -> None:
        entity_id = str(current.get("id"))
        target_stage = pipeline.get_stage(target) if isinstance(target, str) else None
        if target_stage is None:
            raise ValidationError(
                "unknown stage",
                errors={"stage": [f"'{target}' is not a stage of this pipeline"]},
                entity_id=entity_id,
            )
        source = current.get("stage")
        if target_stage.allowed_transitions and source != target_stage.id and source not in target_stage.allowed_transitions:
            raise ValidationError(
                "stage transition not allowed",
                errors={"stage": [f"cannot move from '{source}' to '{target_stage.id}'"]},
                entity_id=entity_id,
            )
        require(
            target_stage.id in get_visible_stages(user, pipeline, roles),
            PipelineAction.MOVE.value,
            user,
            pipeline_id=pipeline.id,
            entity_id=entity_id,
        )

    @staticmethod
    def _filtered_keys(filters: QueryFilters) -> list[str]:
        keys = list(filters.custom_filters or {})
        if filters.sort_by:
            keys.append(filters.sort_by)
        if filters.date_range is not None:
            keys.append(filters.date_range.field)
        return keys

    def _validate(self, payload: dict[str, Any], pipeline: PipelineConfig, *, partial: bool) -> None:
        errors = validate_record(payload, pipeline.fields, partial=partial)
        if errors:
            raise ValidationError("invalid entity data", errors=errors, pipeline_id=pipeline.id)

    def _fetch_all(self, entity_type: str, filters: QueryFilters) -> list[Entity]:
        collected: list[Entity] = []
        page = 1
        while True:
            result = self.adapter.get_all(
                entity_type, filters.model_copy(update={"page": page, "limit": _FETCH_PAGE_SIZE})
            )
            collected.extend(result.items)
            if page >= result.total_pages:
                return collected
            page += 1

    def _audit(
        self,
        user: User,
        pipeline: PipelineConfig,
        entity_id: str,
        action: str,
        before: dict[str, Any] | None,
        after: dict[str, Any] | None,
    ) -> None:
        audit.record(
            actor_user_id=user.id,
            entity_type=f"crm.entity.{pipeline.entity_type}",
            entity_id=entity_id,
            action=action,
            before=before,
            after=after,
            company_id=user.company_id,
        )
