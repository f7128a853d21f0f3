import asyncio
import pytest
import pytest_asyncio
import uuid
from unittest.mock import AsyncMock, patch
from sqlalchemy.pool import StaticPool

from app.core.clock import utcnow
from app.core.config import Settings
from app.core.database import build_engine, build_session_factory, create_tables
from app.core.exceptions import (
    CapacityExceededError,
    ForbiddenError,
    InternalError,
    InvalidCredentialsError,
    InvalidInputError,
    NotFoundError,
)
from app.core.session import SessionContext
from app.realtime.base import EventType, topic_for
from app.realtime.memory import InMemoryChannel
from app.schemas.room import Room, RoomCreate, RoomParticipant, RoomUpdate
from app.schemas.user import User
from app.services.room_service import SECRET_ALPHABET, RoomService
from app.store.base import StoreError
from app.store.memory import MemoryStore
from app.store.sql import SqlStore

@pytest.fixture
def store():
    return MemoryStore()

@pytest.fixture
def channel():
    return InMemoryChannel()

@pytest.fixture
def room_service(store, channel):
    return RoomService(store, channel, Settings())

async def make_session(store, username):
    user = User(
        id=uuid.uuid4(),
        username=username,
        hashed_password="not-a-real-hash",
        created_at=utcnow(),
    )
    await store.create_user(user)
    return SessionContext(user_id=user.id, username=username)

@pytest_asyncio.fixture
async def owner(store):
    return await make_session(store, "owner01")

@pytest_asyncio.fixture
async def member(store):
    return await make_session(store, "member01")

async def seed_room(store, owner, room_id="41231", secret="Ab3xQ9z", name="Lobby"):
    now = utcnow()
    room = Room(
        id=room_id,
        access_secret=secret,
        name=name,
        description="Test room",
        created_by=owner.user_id,
        created_at=now,
        updated_at=now,
    )
    admin = RoomParticipant(room_id=room_id, user_id=owner.user_id, is_admin=True, joined_at=now)
    return await store.create_room(room, admin)

@pytest.mark.asyncio
async def test_create_room_makes_creator_admin(room_service, store, owner):
    # Act
    credentials = await room_service.create_room(owner, RoomCreate(name="Study group"))

    # Assert
    assert len(credentials.room_id) == 5
    assert 10000 <= int(credentials.room_id) <= 99999
    assert len(credentials.access_secret) == 7
    assert all(ch in SECRET_ALPHABET for ch in credentials.access_secret)

    participant = await store.get_participant(credentials.room_id, owner.user_id)
    assert participant is not None
    assert participant.is_admin is True
    room = await store.get_room(credentials.room_id)
    assert room.name == "Study group"
    assert room.created_by == owner.user_id

@pytest.mark.asyncio
async def test_create_room_without_details(room_service, owner):
    credentials = await room_service.create_room(owner)

    details = await room_service.get_room_details(credentials.room_id)
    assert details.name is None
    assert details.description is None

@pytest.mark.asyncio
async def test_create_room_regenerates_colliding_id(room_service, store, owner):
    # Arrange
    await seed_room(store, owner, room_id="11111")

    # Act
    with patch("app.services.room_service.generate_room_id", side_effect=["11111", "22222"]):
        credentials = await room_service.create_room(owner)

    # Assert
    assert credentials.room_id == "22222"
    assert len(store.rooms) == 2

@pytest.mark.asyncio
async def test_create_room_gives_up_after_max_attempts(store, channel, owner):
    # Arrange
    room_service = RoomService(store, channel, Settings(ROOM_ID_MAX_ATTEMPTS=3))
    await seed_room(store, owner, room_id="11111")

    # Act / Assert
    with patch("app.services.room_service.generate_room_id", return_value="11111"):
        with pytest.raises(InternalError):
            await room_service.create_room(owner)
    assert len(store.rooms) == 1

@pytest.mark.asyncio
async def test_join_room_with_valid_credentials(room_service, store, owner, member):
    # Arrange
    await seed_room(store, owner)

    # Act
    joined = await room_service.join_room(member, "41231", "Ab3xQ9z")

    # Assert
    assert joined is True
    participant = await store.get_participant("41231", member.user_id)
    assert participant.is_admin is False
    assert member.current_room_id == "41231"
    user = await store.get_user(member.user_id)
    assert user.current_room_id == "41231"

@pytest.mark.asyncio
async def test_join_room_wrong_password_and_missing_room_look_the_same(room_service, store, owner, member):
    await seed_room(store, owner)

    with pytest.raises(InvalidCredentialsError) as wrong_password:
        await room_service.join_room(member, "41231", "wrong00")
    with pytest.raises(InvalidCredentialsError) as missing_room:
        await room_service.join_room(member, "99999", "Ab3xQ9z")

    assert wrong_password.value.message == missing_room.value.message
    assert wrong_password.value.status_code == 401
    assert await store.get_participant("41231", member.user_id) is None

@pytest.mark.asyncio
async def test_join_room_is_idempotent(room_service, store, owner, member):
    await seed_room(store, owner)

    await room_service.join_room(member, "41231", "Ab3xQ9z")
    await room_service.join_room(member, "41231", "Ab3xQ9z")

    assert await store.count_participants("41231") == 2

@pytest.mark.asyncio
async def test_room_fills_at_capacity(room_service, store, owner):
    # Arrange
    await seed_room(store, owner)

    # Act: nine more users fill the room
    for i in range(9):
        session = await make_session(store, f"guest{i:02d}x")
        assert await room_service.join_room(session, "41231", "Ab3xQ9z")

    late = await make_session(store, "latecomer1")

    # Assert
    with pytest.raises(CapacityExceededError) as exc_info:
        await room_service.join_room(late, "41231", "Ab3xQ9z")
    assert exc_info.value.message == "Room is full"
    assert await store.count_participants("41231") == 10

@pytest.mark.asyncio
async def test_existing_member_can_rejoin_full_room(room_service, store, owner):
    await seed_room(store, owner)
    for i in range(9):
        session = await make_session(store, f"guest{i:02d}x")
        await room_service.join_room(session, "41231", "Ab3xQ9z")

    # Owner is already a participant, so capacity does not apply
    assert await room_service.join_room(owner, "41231", "Ab3xQ9z") is True
    assert await store.count_participants("41231") == 10

@pytest.mark.asyncio
async def test_join_publishes_participant_insert(room_service, store, channel, owner, member):
    await seed_room(store, owner)
    events = []

    async def handler(event):
        events.append(event)

    await channel.subscribe(topic_for("room_participants", "41231"), handler)

    await room_service.join_room(member, "41231", "Ab3xQ9z")

    assert len(events) == 1
    assert events[0].event_type == EventType.INSERT
    assert events[0].record["user_id"] == str(member.user_id)

@pytest.mark.asyncio
async def test_is_room_admin(room_service, store, owner, member):
    await seed_room(store, owner)
    await room_service.join_room(member, "41231", "Ab3xQ9z")

    assert await room_service.is_room_admin("41231", owner.user_id) is True
    assert await room_service.is_room_admin("41231", member.user_id) is False
    assert await room_service.is_room_admin("55555", owner.user_id) is False

@pytest.mark.asyncio
async def test_get_room_details_not_found(room_service):
    with pytest.raises(NotFoundError):
        await room_service.get_room_details("12345")

@pytest.mark.asyncio
async def test_list_rooms_shows_secret_to_creator_only(room_service, store, owner, member):
    await seed_room(store, owner)
    await room_service.join_room(member, "41231", "Ab3xQ9z")

    owner_rooms = await room_service.list_rooms(owner)
    member_rooms = await room_service.list_rooms(member)

    assert owner_rooms[0].access_secret == "Ab3xQ9z"
    assert owner_rooms[0].is_admin is True
    assert owner_rooms[0].participant_count == 2
    assert member_rooms[0].access_secret is None
    assert member_rooms[0].is_admin is False

@pytest.mark.asyncio
async def test_admin_updates_room_settings(room_service, store, owner):
    await seed_room(store, owner)

    details = await room_service.update_room_settings(owner, "41231", RoomUpdate(name="Renamed"))

    assert details.name == "Renamed"
    # Fields not sent are left alone
    assert details.description == "Test room"

@pytest.mark.asyncio
async def test_non_admin_cannot_update_room_settings(room_service, store, owner, member):
    # Arrange
    await seed_room(store, owner)
    await room_service.join_room(member, "41231", "Ab3xQ9z")

    # Act / Assert
    with pytest.raises(ForbiddenError) as exc_info:
        await room_service.update_room_settings(
            member, "41231", RoomUpdate(name="Hijacked", description="Nope")
        )
    assert exc_info.value.message == "You do not have permission to update this room"

    room = await store.get_room("41231")
    assert room.name == "Lobby"
    assert room.description == "Test room"

@pytest.mark.asyncio
async def test_list_participants_includes_usernames(room_service, store, owner, member):
    await seed_room(store, owner)
    await room_service.join_room(member, "41231", "Ab3xQ9z")

    participants = await room_service.list_participants("41231")

    by_name = {p.username: p for p in participants}
    assert set(by_name) == {"owner01", "member01"}
    assert by_name["owner01"].is_admin is True
    assert by_name["member01"].id == member.user_id

@pytest.mark.asyncio
async def test_admin_removes_participant(room_service, store, owner, member):
    await seed_room(store, owner)
    await room_service.join_room(member, "41231", "Ab3xQ9z")

    assert await room_service.remove_participant(owner, "41231", member.user_id) is True
    assert await store.get_participant("41231", member.user_id) is None

@pytest.mark.asyncio
async def test_remove_participant_rules(room_service, store, owner, member):
    await seed_room(store, owner)
    await room_service.join_room(member, "41231", "Ab3xQ9z")
    other_admin = await make_session(store, "second01")
    await room_service.join_room(other_admin, "41231", "Ab3xQ9z")
    await room_service.promote_to_admin(owner, "41231", other_admin.user_id)

    # Non-admin caller
    with pytest.raises(ForbiddenError):
        await room_service.remove_participant(member, "41231", owner.user_id)
    # Self
    with pytest.raises(InvalidInputError):
        await room_service.remove_participant(owner, "41231", owner.user_id)
    # Another admin
    with pytest.raises(ForbiddenError) as exc_info:
        await room_service.remove_participant(owner, "41231", other_admin.user_id)
    assert exc_info.value.message == "Cannot remove another admin from the room"
    # Not a participant
    with pytest.raises(NotFoundError):
        await room_service.remove_participant(owner, "41231", uuid.uuid4())

    assert await store.count_participants("41231") == 3

@pytest.mark.asyncio
async def test_promote_to_admin(room_service, store, owner, member):
    await seed_room(store, owner)
    await room_service.join_room(member, "41231", "Ab3xQ9z")

    with pytest.raises(ForbiddenError):
        await room_service.promote_to_admin(member, "41231", member.user_id)

    await room_service.promote_to_admin(owner, "41231", member.user_id)
    assert await room_service.is_room_admin("41231", member.user_id) is True

@pytest.mark.asyncio
async def test_last_admin_cannot_leave(room_service, store, owner, member):
    await seed_room(store, owner)
    await room_service.join_room(member, "41231", "Ab3xQ9z")

    with pytest.raises(InvalidInputError):
        await room_service.leave_room(owner, "41231")

    # A member can leave, and the admin can once someone else is admin
    assert await room_service.leave_room(member, "41231") is True
    assert member.current_room_id is None
    await room_service.join_room(member, "41231", "Ab3xQ9z")
    await room_service.promote_to_admin(owner, "41231", member.user_id)
    assert await room_service.leave_room(owner, "41231") is True
    assert await room_service.is_room_admin("41231", member.user_id) is True

@pytest.mark.asyncio
async def test_leave_room_not_a_participant(room_service, store, owner, member):
    await seed_room(store, owner)

    with pytest.raises(NotFoundError):
        await room_service.leave_room(member, "41231")

@pytest_asyncio.fixture
async def sql_store():
    engine = build_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    await create_tables(engine)
    store = SqlStore(build_session_factory(engine), engine=engine)
    yield store
    await store.close()

@pytest.mark.asyncio
async def test_concurrent_admin_leaves_keep_one_admin(sql_store, channel):
    # Arrange
    room_service = RoomService(sql_store, channel, Settings())
    owner = await make_session(sql_store, "owner01")
    second = await make_session(sql_store, "owner02")
    await seed_room(sql_store, owner)
    await room_service.join_room(second, "41231", "Ab3xQ9z")
    await room_service.promote_to_admin(owner, "41231", second.user_id)

    # Act
    results = await asyncio.gather(
        room_service.leave_room(owner, "41231"),
        room_service.leave_room(second, "41231"),
        return_exceptions=True,
    )

    # Assert
    assert results.count(True) == 1
    assert sum(isinstance(r, InvalidInputError) for r in results) == 1
    remaining = await room_service.list_participants("41231")
    assert len(remaining) == 1
    assert remaining[0].is_admin is True

class FailingChannel(InMemoryChannel):
    async def publish(self, event):
        raise ConnectionError("pub/sub unavailable")

@pytest.mark.asyncio
async def test_publish_failure_does_not_fail_committed_join(store, owner, member):
    # Arrange
    room_service = RoomService(store, FailingChannel(), Settings())
    await seed_room(store, owner)

    # Act
    joined = await room_service.join_room(member, "41231", "Ab3xQ9z")

    # Assert
    assert joined is True
    assert await store.count_participants("41231") == 2
    assert await room_service.leave_room(member, "41231") is True
    assert await room_service.delete_room(owner, "41231") is True

    assert await room_service.is_room_admin("41231", member.user_id) is True

@pytest.mark.asyncio
async def test_delete_room_removes_everything(room_service, store, channel, owner, member):
    # Arrange
    await seed_room(store, owner)
    await room_service.join_room(member, "41231", "Ab3xQ9z")
    events = []

    async def handler(event):
        events.append(event)

    await channel.subscribe(topic_for("rooms", "41231"), handler)

    # Act
    assert await room_service.delete_room(owner, "41231") is True

    # Assert
    assert await store.get_room("41231") is None
    assert await store.count_participants("41231") == 0
    assert await store.list_messages("41231") == []
    assert events[0].event_type == EventType.DELETE

@pytest.mark.asyncio
async def test_non_admin_cannot_delete_room(room_service, store, owner, member):
    await seed_room(store, owner)
    await room_service.join_room(member, "41231", "Ab3xQ9z")

    with pytest.raises(ForbiddenError):
        await room_service.delete_room(member, "41231")
    assert await store.get_room("41231") is not None

@pytest.mark.asyncio
async def test_delete_room_store_failure_is_internal_error(channel):
    # Arrange
    mock_store = AsyncMock()
    user_id = uuid.uuid4()
    mock_store.get_participant.return_value = RoomParticipant(
        room_id="41231", user_id=user_id, is_admin=True, joined_at=utcnow()
    )
    mock_store.delete_room.side_effect = StoreError("connection reset")
    room_service = RoomService(mock_store, channel, Settings())
    session = SessionContext(user_id=user_id, username="owner01")

    # Act / Assert
    with pytest.raises(InternalError) as exc_info:
        await room_service.delete_room(session, "41231")
    assert "connection reset" not in exc_info.value.message
