from __future__ import annotations

from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from app.domain.errors import InvalidReferenceError
from app.domain.models import Asset, AssetCreate, Property, PropertyCreate
from app.domain.permissions import OWNER_ONLY, OWNER_OR_OPERATOR
from app.domain.principal import Principal
from app.infra.events import EventBus
from app.services.access_gate import require_role, scope_filter, tenant_predicate


class RegistryService:
    def __init__(self, engine: Engine, event_bus: EventBus) -> None:
        self._engine = engine
        self._events = event_bus

    def _session(self) -> Session:
        return Session(self._engine, expire_on_commit=False)

    def create_property(self, principal: Principal, payload: PropertyCreate) -> Property:
        owner = require_role(principal, OWNER_ONLY)
        row = Property(tenant_id=owner.id, name=payload.name.strip(), address=payload.address)
        with self._session() as session:
            session.add(row)
            self._events.publish_dict(
                "registry.property.created",
                owner.id,
                {"property_id": row.id},
                actor_id=owner.id,
                session=session,
            )
            session.commit()
            session.refresh(row)
        return row

    def list_properties(self, principal: Principal) -> list[Property]:
        require_role(principal, OWNER_OR_OPERATOR)
        with self._session() as session:
            statement = (
                select(Property)
                .where(tenant_predicate(Property.tenant_id, principal))
                .where(col(Property.is_active).is_(True))
                .order_by(col(Property.name))
            )
            return list(session.exec(statement).all())

    def create_asset(self, principal: Principal, payload: AssetCreate) -> Asset:
        owner = require_role(principal, OWNER_ONLY)
        with self._session() as session:
            prop = session.exec(
                select(Property)
                .where(Property.id == payload.property_id)
                .where(tenant_predicate(Property.tenant_id, owner))
                .where(col(Property.is_active).is_(True))
            ).first()
            if prop is None:
                raise InvalidReferenceError("invalid property id or property not found")
            row = Asset(
                tenant_id=owner.id,
                property_id=prop.id,
                name=payload.name.strip(),
                location=payload.location,
                serial_number=payload.serial_number,
            )
            session.add(row)
            self._events.publish_dict(
                "registry.asset.created",
                owner.id,
                {"asset_id": row.id, "property_id": row.property_id},
                actor_id=owner.id,
                session=session,
            )
            session.commit()
            session.refresh(row)
        return row

    def list_assets(self, principal: Principal, *, property_id: str | None = None) -> list[Asset]:
        require_role(principal, OWNER_OR_OPERATOR)
        if scope_filter(principal) is None:
            return []
        with self._session() as session:
            statement = (
                select(Asset)
                .where(tenant_predicate(Asset.tenant_id, principal))
                .where(col(Asset.is_active).is_(True))
            )
            if property_id is not None:
                statement = statement.where(Asset.property_id == property_id)
            return list(session.exec(statement.order_by(col(Asset.name))).all())
