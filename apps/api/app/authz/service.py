from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from app import audit
from app.authz.defaults import create_default_roles
from app.authz.models import AuthzRole
from app.authz.schemas import RoleCreate, RoleDefinition, RoleUpdate, User
from app.core.errors import NotFoundError, ValidationError
from app.platform.security.guards import require
from app.platform.security.policies import can_manage_roles


class RoleService:
    entity_type = "authz.role"

    def seed_default_roles(
        self, session: Session, company_id: str, *, user: User | None = None
    ) -> list[RoleDefinition]:
        if user is not None:
            self._require_manage(session, user, "roles.seed")
        existing = set(session.scalars(select(AuthzRole.id).where(AuthzRole.company_id == company_id)).all())
        for role in create_default_roles(company_id):
            if role.id in existing:
                continue
            session.add(
                AuthzRole(
                    company_id=company_id,
                    id=role.id,
                    name=role.name,
                    description=role.description,
                    is_system_role=role.is_system_role,
                    permissions=role.permissions.model_dump(mode="json"),
                )
            )
        session.commit()
        return self.list_roles(session, company_id)

    def list_roles(self, session: Session, company_id: str) -> list[RoleDefinition]:
        rows = session.scalars(
            select(AuthzRole).where(AuthzRole.company_id == company_id).order_by(AuthzRole.created_at.asc(), AuthzRole.id.asc())
        ).all()
        return [self._to_definition(row) for row in rows]

    def get_role(self, session: Session, company_id: str, role_id: str) -> RoleDefinition:
        return self._to_definition(self._get_row(session, company_id, role_id))

    def create_role(self, session: Session, user: User, dto: RoleCreate) -> RoleDefinition:
        self._require_manage(session, user, "roles.create")
        taken = session.scalar(
            select(AuthzRole.id).where(AuthzRole.company_id == user.company_id, AuthzRole.id == dto.id)
        )
        if taken is not None:
            raise ValidationError("role already exists", errors={"id": ["role id is already in use"]}, role_id=dto.id)

        row = AuthzRole(
            company_id=user.company_id,
            id=dto.id,
            name=dto.name.strip(),
            description=dto.description,
            is_system_role=False,
            permissions=dto.permissions.model_dump(mode="json"),
        )
        session.add(row)
        session.flush()

        created = self._to_definition(row)
        audit.record(
            actor_user_id=user.id,
            entity_type=self.entity_type,
            entity_id=row.id,
            action="create",
            before=None,
            after=created.model_dump(mode="json"),
            company_id=user.company_id,
        )
        session.commit()
        return created

    def update_role(self, session: Session, user: User, role_id: str, dto: RoleUpdate) -> RoleDefinition:
        self._require_manage(session, user, "roles.update")
        row = self._get_row(session, user.company_id, role_id)
        if row.is_system_role:
            raise ValidationError("system role cannot be modified", role_id=role_id)

        before = self._to_definition(row).model_dump(mode="json")
        if dto.name is not None:
            row.name = dto.name.strip()
        if "description" in dto.model_fields_set:
            row.description = dto.description
        if dto.permissions is not None:
            row.permissions = dto.permissions.model_dump(mode="json")
        session.flush()

        updated = self._to_definition(row)
        audit.record(
            actor_user_id=user.id,
            entity_type=self.entity_type,
            entity_id=role_id,
            action="update",
            before=before,
            after=updated.model_dump(mode="json"),
            company_id=user.company_id,
        )
        session.commit()
        return updated

    def delete_role(self, session: Session, user: User, role_id: str) -> None:
        self._require_manage(session, user, "roles.delete")
        row = self._get_row(session, user.company_id, role_id)
        if row.is_system_role:
            raise ValidationError("system role cannot be deleted", role_id=role_id)

        audit.record(
            actor_user_id=user.id,
            entity_type=self.entity_type,
            entity_id=role_id,
            action="delete",
            before=self._to_definition(row).model_dump(mode="json"),
            after=None,
            company_id=user.company_id,
        )
        session.delete(row)
        session.commit()

    def _require_manage(self, session: Session, user: User, action: str) -> None:
        roles = self.list_roles(session, user.company_id)
        require(can_manage_roles(user, roles), action, user)

    def _get_row(self, session: Session, company_id: str, role_id: str) -> AuthzRole:
        row = session.scalar(select(AuthzRole).where(AuthzRole.company_id == company_id, AuthzRole.id == role_id))
        if row is None:
            raise NotFoundError("role not found", role_id=role_id)
        return row

    def _to_definition(self, row: AuthzRole) -> RoleDefinition:
        return RoleDefinition(
            id=row.id,
            company_id=row.company_id,
            name=row.name,
            description=row.description,
            is_system_role=row.is_system_role,
            permissions=row.permissions or {},
        )


role_service = RoleService()
