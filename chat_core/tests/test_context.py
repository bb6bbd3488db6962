from typing import Dict, Optional

import pytest

from chat_core.context import ContextBuilder
from chat_core.domain.models import ChatMessage, PromptMessage


class BlockEstimator:
    """每个渲染块记 1 个 token，便于精确控制预算。"""

    def estimate(self, text: str) -> int:
        if not text:
            return 0
        return text.count("\n\n") + 1


class StoreStub:
    def __init__(self):
        self.items: Dict[str, ChatMessage] = {}
        self.lookups = 0

    def add(self, msg: ChatMessage) -> None:
        self.items[msg.id] = msg

    async def get(self, message_id: str) -> Optional[ChatMessage]:
        self.lookups += 1
        return self.items.get(message_id)


def _chain(store: StoreStub, length: int) -> str:
    """构造 m0 <- m1 <- ... 的链，返回最新一条的 ID。"""

    parent = None
    for i in range(length):
        role = "user" if i % 2 == 0 else "assistant"
        store.add(ChatMessage(id=f"m{i}", role=role, text=f"turn {i}", parent_message_id=parent))
        parent = f"m{i}"
    return parent


@pytest.mark.asyncio
async def test_no_history_yields_system_and_user():
    store = StoreStub()
    builder = ContextBuilder(BlockEstimator(), store.get)
    assembly = await builder.build("Hello", system_message="be brief", max_model_tokens=4000, max_response_tokens=1000)
    assert [(m.role, m.content) for m in assembly.messages] == [("system", "be brief"), ("user", "Hello")]
    assert assembly.token_count == 2
    assert assembly.max_response_tokens == 1000


@pytest.mark.asyncio
async def test_history_is_chronological_between_system_and_latest():
    store = StoreStub()
    leaf = _chain(store, 4)
    builder = ContextBuilder(BlockEstimator(), store.get)
    assembly = await builder.build(
        "newest", parent_message_id=leaf, system_message="sys", max_model_tokens=100, max_response_tokens=10
    )
    contents = [m.content for m in assembly.messages]
    assert contents == ["sys", "turn 0", "turn 1", "turn 2", "turn 3", "newest"]
    assert [m.role for m in assembly.messages][1:5] == ["user", "assistant", "user", "assistant"]


@pytest.mark.asyncio
async def test_only_whole_turns_that_fit_are_included():
    store = StoreStub()
    leaf = _chain(store, 50)
    builder = ContextBuilder(BlockEstimator(), store.get)
    # 预算 4 个块：3 轮历史 + 最新输入
    assembly = await builder.build("newest", parent_message_id=leaf, max_model_tokens=14, max_response_tokens=10)
    assert [m.content for m in assembly.messages] == ["turn 47", "turn 48", "turn 49", "newest"]
    assert assembly.token_count == 4
    assert store.lookups == 4


@pytest.mark.asyncio
async def test_prompt_never_exceeds_budget():
    store = StoreStub()
    leaf = _chain(store, 20)
    builder = ContextBuilder(BlockEstimator(), store.get)
    for budget in range(2, 25):
        assembly = await builder.build(
            "q", parent_message_id=leaf, system_message="s", max_model_tokens=budget + 5, max_response_tokens=5
        )
        assert assembly.token_count <= budget
        assert assembly.max_response_tokens == 5


@pytest.mark.asyncio
async def test_unresolvable_parent_truncates_silently():
    store = StoreStub()
    store.add(ChatMessage(id="m1", role="assistant", text="known", parent_message_id="gone"))
    builder = ContextBuilder(BlockEstimator(), store.get)
    assembly = await builder.build("q", parent_message_id="m1", max_model_tokens=100, max_response_tokens=10)
    assert [m.content for m in assembly.messages] == ["known", "q"]


@pytest.mark.asyncio
async def test_parent_without_role_renders_as_user():
    store = StoreStub()
    store.add(ChatMessage(id="m1", role="", text="old"))
    builder = ContextBuilder(BlockEstimator(), store.get)
    assembly = await builder.build("q", parent_message_id="m1", max_model_tokens=100, max_response_tokens=10)
    assert assembly.messages[0].role == "user"
    assert builder.render(assembly.messages) == "User:\nold\n\nUser:\nq"


@pytest.mark.asyncio
async def test_empty_text_without_system_short_circuits():
    store = StoreStub()
    leaf = _chain(store, 3)
    builder = ContextBuilder(BlockEstimator(), store.get)
    assembly = await builder.build("", parent_message_id=leaf)
    assert assembly.messages == []
    assert assembly.token_count == 0
    assert store.lookups == 0


@pytest.mark.asyncio
async def test_response_tokens_limited_by_headroom_and_at_least_one():
    store = StoreStub()
    builder = ContextBuilder(BlockEstimator(), store.get)
    assembly = await builder.build("q", max_model_tokens=3, max_response_tokens=1000)
    assert assembly.max_response_tokens == 3
    assert assembly.max_response_tokens >= 1


def test_render_uses_role_labels():
    builder = ContextBuilder(BlockEstimator(), StoreStub().get)
    text = builder.render(
        [
            PromptMessage(role="system", content="rules"),
            PromptMessage(role="user", content="hi"),
            PromptMessage(role="assistant", content="hello"),
        ]
    )
    assert text == "Instructions:\nrules\n\nUser:\nhi\n\nChatGPT:\nhello"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "max_model_tokens, max_response_tokens, expected",
    [(4000, 1000, 1000), (500, 1000, 500), (0, 1000, 1)],
)
async def test_empty_input_clamps_response_tokens(max_model_tokens, max_response_tokens, expected):
    store = StoreStub()
    builder = ContextBuilder(BlockEstimator(), store.get)
    assembly = await builder.build(
        "", max_model_tokens=max_model_tokens, max_response_tokens=max_response_tokens
    )
    assert assembly.messages == []
    assert assembly.token_count == 0
    assert assembly.max_response_tokens == expected
