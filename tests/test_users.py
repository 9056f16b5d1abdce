import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from config import Settings
from database import Base
from errors import ConflictError, UnauthorizedError, ValidationError
from identity import IdentityGate, token_from_headers
from models import Category, CategoryType, User
from schemas import SignupIn
from services import UserService
from tokens import generate_session_token, read_session_token


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def make_settings(multi_tenant: bool) -> Settings:
    return Settings(
        database_url="sqlite+pysqlite:///:memory:",
        multi_tenant=multi_tenant,
        secret_key="test-secret",
        token_max_age_hours=1,
        balance_check_hours=0,
    )


def signup(session, username: str = "Alice", pincode: str = "4321") -> User:
    return UserService(session).signup(
        SignupIn(name="Alice", username=username, password="hunter2", pincode=pincode)
    )


def test_signup_hashes_secrets_and_seeds_categories() -> None:
    session = make_session()
    user = signup(session)

    assert user.username == "alice"
    assert user.password_hash and user.password_hash != "hunter2"
    assert user.pincode_hash and user.pincode_hash != "4321"

    counts = dict(
        session.execute(
            select(Category.type, func.count(Category.id))
            .where(Category.user_id == user.id)
            .group_by(Category.type)
        ).all()
    )
    assert counts == {CategoryType.expense: 7, CategoryType.income: 5}


def test_signup_rejects_duplicates_and_bad_pincodes() -> None:
    session = make_session()
    signup(session)

    with pytest.raises(ConflictError):
        signup(session, username="ALICE")
    with pytest.raises(ValidationError):
        signup(session, username="bob", pincode="12a4")
    with pytest.raises(ValidationError):
        signup(session, username="carol", pincode="12345")


def test_password_and_pincode_login() -> None:
    session = make_session()
    user = signup(session)
    users = UserService(session)

    assert users.authenticate("ALICE", "hunter2").id == user.id
    assert users.authenticate_pincode("alice", "4321").id == user.id

    with pytest.raises(UnauthorizedError):
        users.authenticate("alice", "wrong")
    with pytest.raises(UnauthorizedError):
        users.authenticate("nobody", "hunter2")
    with pytest.raises(UnauthorizedError):
        users.authenticate_pincode("alice", "0000")
    with pytest.raises(ValidationError):
        users.authenticate_pincode("alice", "12")


def test_local_user_cannot_log_in_with_password() -> None:
    session = make_session()
    local = UserService(session).ensure_local_user()

    assert local.name == "Me"
    assert local.username is None
    with pytest.raises(UnauthorizedError):
        UserService(session).authenticate("me", "")


def test_rename_user() -> None:
    session = make_session()
    user = signup(session)

    assert UserService(session).rename(user.id, "  Alice B ").name == "Alice B"
    with pytest.raises(ValidationError):
        UserService(session).rename(user.id, "   ")


def test_session_tokens_round_trip_and_reject_tampering() -> None:
    token = generate_session_token(42)

    assert read_session_token(token) == 42
    assert read_session_token(token + "x") is None
    assert read_session_token("not-a-token") is None


def test_token_is_read_from_bearer_or_custom_header() -> None:
    assert token_from_headers({"Authorization": "Bearer abc"}) == "abc"
    assert token_from_headers({"X-Session-Token": " xyz "}) == "xyz"
    assert token_from_headers({"Authorization": "Basic abc"}) is None
    assert token_from_headers({}) is None


def test_single_tenant_gate_uses_local_user() -> None:
    session = make_session()
    gate = IdentityGate(session, settings=make_settings(multi_tenant=False))

    first = gate.resolve(None)
    second = gate.resolve("garbage")

    assert first.id == second.id
    assert session.scalar(select(func.count(User.id))) == 1


def test_multi_tenant_gate_requires_valid_session() -> None:
    session = make_session()
    user = signup(session)
    gate = IdentityGate(session, settings=make_settings(multi_tenant=True))

    with pytest.raises(UnauthorizedError):
        gate.resolve(None)
    with pytest.raises(UnauthorizedError):
        gate.resolve("garbage")
    with pytest.raises(UnauthorizedError):
        gate.resolve(generate_session_token(user.id + 100))

    assert gate.resolve(generate_session_token(user.id)).id == user.id
