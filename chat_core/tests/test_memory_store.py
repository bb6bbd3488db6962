import pytest

from chat_core.domain.models import ChatMessage
from chat_core.infrastructure.storage.memory_store import MemoryMessageStore


def _msg(mid: str, text: str = "x") -> ChatMessage:
    return ChatMessage(id=mid, role="user", text=text)


@pytest.mark.asyncio
async def test_set_then_get_round_trip():
    store = MemoryMessageStore()
    msg = ChatMessage(id="m1", role="assistant", text="hi", conversation_id="c1", parent_message_id="m0")
    await store.set(msg.id, msg)
    assert await store.get("m1") == msg
    assert await store.get("missing") is None


@pytest.mark.asyncio
async def test_upsert_same_message_twice_is_idempotent():
    store = MemoryMessageStore()
    msg = _msg("m1", "same")
    await store.set(msg.id, msg)
    await store.set(msg.id, _msg("m1", "same"))
    assert len(store) == 1
    assert (await store.get("m1")).text == "same"


@pytest.mark.asyncio
async def test_evicts_least_recently_used():
    store = MemoryMessageStore(max_size=2)
    await store.set("a", _msg("a"))
    await store.set("b", _msg("b"))
    # 读取 a 使其变为最近使用
    assert await store.get("a") is not None
    await store.set("c", _msg("c"))
    assert "a" in store
    assert "b" not in store
    assert "c" in store


def test_rejects_non_positive_size():
    with pytest.raises(ValueError):
        MemoryMessageStore(max_size=0)
