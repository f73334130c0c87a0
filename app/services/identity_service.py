from __future__ import annotations

import hashlib
import hmac
import logging
import os

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from app.domain.errors import DuplicateError, NotFoundError, UnauthenticatedError
from app.domain.models import LoginRequest, OperatorCreate, OwnerRegisterRequest, User
from app.domain.permissions import PrincipalRole
from app.domain.principal import OwnerPrincipal, Principal, principal_from_user
from app.infra.auth import create_access_token
from app.infra.events import EventBus

logger = logging.getLogger(__name__)


class IdentityService:
    def __init__(self, engine: Engine, event_bus: EventBus) -> None:
        self._engine = engine
        self._events = event_bus

    def _session(self) -> Session:
        return Session(self._engine, expire_on_commit=False)

    def _hash_password(self, raw_password: str) -> str:
        salt = os.getenv("PASSWORD_SALT", "maintenance-dev-salt")
        return hashlib.sha256(f"{salt}:{raw_password}".encode()).hexdigest()

    def _normalize_email(self, email: str) -> str:
        return email.strip().lower()

    def _insert_user(self, user: User, event_type: str) -> User:
        # Owners are their own tenant; operators act under their employer.
        scope_id = user.employer_id or user.id
        with self._session() as session:
            try:
                session.add(user)
                session.flush()
                self._events.publish_dict(
                    event_type,
                    scope_id,
                    {"user_id": user.id},
                    actor_id=scope_id,
                    session=session,
                )
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise DuplicateError("email already exists") from exc
            session.refresh(user)
        return user

    def register_owner(self, payload: OwnerRegisterRequest) -> User:
        owner = self._insert_user(
            User(
                email=self._normalize_email(payload.email),
                password_hash=self._hash_password(payload.password),
                role=PrincipalRole.OWNER,
                employer_id=None,
                first_name=payload.first_name.strip(),
                last_name=payload.last_name.strip(),
                phone=payload.phone,
            ),
            "identity.owner.registered",
        )
        logger.info("owner registered", extra={"user_id": owner.id})
        return owner

    def create_operator(self, owner: OwnerPrincipal, payload: OperatorCreate) -> User:
        operator = self._insert_user(
            User(
                email=self._normalize_email(payload.email),
                password_hash=self._hash_password(payload.password),
                role=PrincipalRole.OPERATOR,
                employer_id=owner.id,
                first_name=payload.first_name.strip(),
                last_name=payload.last_name.strip(),
                phone=payload.phone,
            ),
            "identity.operator.created",
        )
        logger.info("operator created", extra={"user_id": operator.id, "employer_id": owner.id})
        return operator

    def list_operators(self, owner: OwnerPrincipal, *, include_inactive: bool = False) -> list[User]:
        with self._session() as session:
            statement = (
                select(User)
                .where(User.role == PrincipalRole.OPERATOR)
                .where(User.employer_id == owner.id)
                .order_by(col(User.created_at))
            )
            if not include_inactive:
                statement = statement.where(col(User.is_active).is_(True))
            return list(session.exec(statement).all())

    def deactivate_operator(self, owner: OwnerPrincipal, operator_id: str) -> User:
        with self._session() as session:
            operator = session.exec(
                select(User)
                .where(User.id == operator_id)
                .where(User.role == PrincipalRole.OPERATOR)
                .where(User.employer_id == owner.id)
            ).first()
            if operator is None:
                raise NotFoundError("operator not found")
            operator.is_active = False
            session.add(operator)
            self._events.publish_dict(
                "identity.operator.deactivated",
                owner.id,
                {"user_id": operator.id},
                actor_id=owner.id,
                session=session,
            )
            session.commit()
            session.refresh(operator)
        return operator

    def authenticate(self, payload: LoginRequest) -> tuple[User, str]:
        with self._session() as session:
            user = session.exec(select(User).where(User.email == self._normalize_email(payload.email))).first()
        if user is None or not user.is_active:
            raise UnauthenticatedError("invalid credentials")
        if not hmac.compare_digest(user.password_hash, self._hash_password(payload.password)):
            raise UnauthenticatedError("invalid credentials")
        token = create_access_token(user_id=user.id, role=user.role.value, employer_id=user.employer_id)
        return user, token

    def get_user(self, user_id: str) -> User:
        with self._session() as session:
            user = session.get(User, user_id)
        if user is None:
            raise NotFoundError("user not found")
        return user

    def load_principal(self, user_id: str) -> Principal | None:
        with self._session() as session:
            user = session.get(User, user_id)
        if user is None or not user.is_active:
            return None
        return principal_from_user(user)
