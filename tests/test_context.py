import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from shopassist.models import ProductInfo, Session
from shopassist.services.context_service import ContextService, StaleSessionError
from shopassist.services.redis import RedisCrudService, RedisUnavailableError


@pytest.fixture
def mock_redis_crud() -> MagicMock:
    """Mock Redis CRUD with async get/get_checked/set/delete/compare_and_set."""
    m = MagicMock(spec=RedisCrudService)
    m.get = AsyncMock(return_value=None)
    m.get_checked = AsyncMock(return_value=None)
    m.set = AsyncMock(return_value=True)
    m.delete = AsyncMock(return_value=True)
    m.compare_and_set = AsyncMock(return_value=True)
    return m


@pytest.fixture
def context_service(mock_redis_crud: MagicMock) -> ContextService:
    """ContextService with mocked Redis and TTL 3600."""
    return ContextService(redis_crud=mock_redis_crud, ttl_seconds=3600)


def _stored(session: Session, version: int) -> str:
    data = session.to_dict()
    data["version"] = version
    return json.dumps(data)


@pytest.mark.asyncio
async def test_get_session_missing(context_service: ContextService) -> None:
    """get_session returns None when key is not in Redis."""
    result = await context_service.get_session("session-1")
    assert result is None
    context_service.redis.get.assert_called_once_with("session:session-1")


@pytest.mark.asyncio
async def test_get_session_present(context_service: ContextService) -> None:
    """get_session restores the cycle state and search state."""
    session = Session(session_id="s1", country="UA", language="uk", currency="UAH")
    session.search_state.category = "smartphones"
    session.search_state.last_product = ProductInfo("Galaxy S24", 799.0)
    session.cycle_state.cycle_id = 3
    session.cycle_state.iteration = 4
    session.cycle_state.last_defined = ["Galaxy S24"]
    context_service.redis.get.return_value = _stored(session, 5)

    result = await context_service.get_session("s1")
    assert result is not None
    assert result.country == "UA"
    assert result.search_state.category == "smartphones"
    assert result.search_state.last_product == ProductInfo("Galaxy S24", 799.0)
    assert result.cycle_state.cycle_id == 3
    assert result.cycle_state.iteration == 4
    assert result.cycle_state.last_defined == ["Galaxy S24"]
    assert result.version == 5


@pytest.mark.asyncio
async def test_get_session_invalid_json(context_service: ContextService) -> None:
    """get_session returns None when stored value is invalid JSON."""
    context_service.redis.get.return_value = "not json"
    assert await context_service.get_session("s1") is None


@pytest.mark.asyncio
async def test_save_session_last_write_wins(context_service: ContextService) -> None:
    """Without an expected version the session is written with TTL and the version bumps."""
    session = Session(session_id="s1")
    ok = await context_service.save_session(session)
    assert ok is True
    assert session.version == 1
    call_args = context_service.redis.set.call_args
    assert call_args[0][0] == "session:s1"
    assert json.loads(call_args[0][1])["version"] == 1
    assert call_args[1]["ttl_seconds"] == 3600
    context_service.redis.compare_and_set.assert_not_called()


@pytest.mark.asyncio
async def test_save_session_with_matching_version(context_service: ContextService) -> None:
    session = Session(session_id="s1", version=2)
    raw = _stored(session, 2)
    context_service.redis.get_checked.return_value = raw

    ok = await context_service.save_session(session, expected_version=2)
    assert ok is True
    assert session.version == 3
    key, expected, payload = context_service.redis.compare_and_set.call_args[0]
    assert key == "session:s1"
    assert expected == raw
    assert json.loads(payload)["version"] == 3


@pytest.mark.asyncio
async def test_save_session_stale_version(context_service: ContextService) -> None:
    """A write based on an older version is rejected before touching Redis."""
    session = Session(session_id="s1", version=2)
    context_service.redis.get_checked.return_value = _stored(session, 4)

    with pytest.raises(StaleSessionError) as exc_info:
        await context_service.save_session(session, expected_version=2)
    assert exc_info.value.expected == 2
    assert exc_info.value.actual == 4
    assert session.version == 2
    context_service.redis.compare_and_set.assert_not_called()


@pytest.mark.asyncio
async def test_save_session_lost_race(context_service: ContextService) -> None:
    """A concurrent writer between read and write surfaces as StaleSessionError."""
    session = Session(session_id="s1", version=1)
    context_service.redis.get_checked.side_effect = [_stored(session, 1), _stored(session, 2)]
    context_service.redis.compare_and_set.return_value = False

    with pytest.raises(StaleSessionError):
        await context_service.save_session(session, expected_version=1)
    assert session.version == 1


@pytest.mark.asyncio
async def test_save_new_session_with_expected_zero(context_service: ContextService) -> None:
    session = Session(session_id="fresh")
    ok = await context_service.save_session(session, expected_version=0)
    assert ok is True
    assert context_service.redis.compare_and_set.call_args[0][1] is None
    assert session.version == 1


@pytest.mark.asyncio
async def test_versioned_save_when_redis_not_connected() -> None:
    """An unconnected store fails the save instead of reporting a conflict."""
    service = ContextService(RedisCrudService("redis://localhost:6379/0"), ttl_seconds=3600)
    session = Session(session_id="s1", version=3)
    assert await service.save_session(session, expected_version=3) is False
    assert session.version == 3


@pytest.mark.asyncio
async def test_versioned_save_when_read_fails(context_service: ContextService) -> None:
    context_service.redis.get_checked.side_effect = RedisUnavailableError("connection refused")
    session = Session(session_id="s1", version=3)
    assert await context_service.save_session(session, expected_version=3) is False
    assert session.version == 3
    context_service.redis.compare_and_set.assert_not_called()


@pytest.mark.asyncio
async def test_versioned_save_when_write_fails(context_service: ContextService) -> None:
    """Losing Redis between read and write is an outage, not a concurrent write."""
    session = Session(session_id="s1", version=1)
    context_service.redis.get_checked.return_value = _stored(session, 1)
    context_service.redis.compare_and_set.side_effect = RedisUnavailableError("timeout")
    assert await context_service.save_session(session, expected_version=1) is False
    assert session.version == 1


@pytest.mark.asyncio
async def test_delete_session(context_service: ContextService) -> None:
    """delete_session calls Redis delete with correct key."""
    ok = await context_service.delete_session("session-x")
    assert ok is True
    context_service.redis.delete.assert_called_once_with("session:session-x")
