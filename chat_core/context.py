"""对话上下文组装与 token 预算协商。

从最新一轮用户输入出发，沿 parent_message_id 逐条向前查找历史消息，
贪心地把尽可能多的完整轮次塞进 (max_model_tokens - max_response_tokens)
的预算内：

1. 将候选序列渲染为带角色前缀、空行分隔的纯文本 prompt；
2. 估算 token 数，超出预算则停止并保留上一次被接受的候选；
3. 否则接受该候选，取出父消息插入到 system 块之后、已有历史之前，继续下一轮。

单轮消息从不截断：放不下就整轮丢弃。
"""

import logging
from typing import List, Optional

from chat_core.domain.models import PromptAssembly, PromptMessage
from chat_core.domain.store import GetMessageById
from chat_core.infrastructure.logging.logger import log_event
from chat_core.tokenizer import TokenEstimator

USER_LABEL_DEFAULT = "User"
ASSISTANT_LABEL_DEFAULT = "ChatGPT"


class ContextBuilder:
    def __init__(
        self,
        estimator: TokenEstimator,
        get_message_by_id: GetMessageById,
        user_label: str = USER_LABEL_DEFAULT,
        assistant_label: str = ASSISTANT_LABEL_DEFAULT,
    ):
        self._estimator = estimator
        self._get_message_by_id = get_message_by_id
        self._user_label = user_label
        self._assistant_label = assistant_label

    async def build(
        self,
        latest_text: str,
        parent_message_id: Optional[str] = None,
        system_message: Optional[str] = None,
        max_model_tokens: int = 4000,
        max_response_tokens: int = 1000,
        name: Optional[str] = None,
    ) -> PromptAssembly:
        """组装本次请求的消息列表。

        Returns:
            PromptAssembly，其中 max_response_tokens 已按剩余空间收紧，且至少为 1。
        """

        if not latest_text and not system_message:
            return PromptAssembly(
                messages=[],
                token_count=0,
                max_response_tokens=max(1, min(max_model_tokens, max_response_tokens)),
            )

        max_prompt_tokens = max_model_tokens - max_response_tokens

        messages: List[PromptMessage] = []
        if system_message:
            messages.append(PromptMessage(role="system", content=system_message))
        system_offset = len(messages)

        next_messages = list(messages)
        if latest_text:
            next_messages.append(PromptMessage(role="user", content=latest_text, name=name))

        token_count = 0
        history_turns = 0
        while True:
            prompt = self.render(next_messages)
            estimate = self._estimator.estimate(prompt)
            fits = estimate <= max_prompt_tokens
            if prompt and not fits:
                break

            messages = next_messages
            token_count = estimate
            if not fits or not parent_message_id:
                break

            parent = await self._get_message_by_id(parent_message_id)
            if parent is None:
                log_event(logging.DEBUG, "Parent message not found", {}, parent_message_id=parent_message_id)
                break

            ancestor = PromptMessage(role=parent.role or "user", content=parent.text, name=parent.name)
            next_messages = next_messages[:system_offset] + [ancestor] + next_messages[system_offset:]
            parent_message_id = parent.parent_message_id
            history_turns += 1

        included_history = len(messages) - system_offset - (1 if latest_text else 0)
        if included_history < history_turns:
            log_event(
                logging.DEBUG,
                "Truncated context",
                {},
                included=included_history,
                rejected=history_turns - included_history,
                prompt_tokens=token_count,
            )

        response_tokens = max(1, min(max_model_tokens - token_count, max_response_tokens))
        return PromptAssembly(messages=messages, token_count=token_count, max_response_tokens=response_tokens)

    def render(self, messages: List[PromptMessage]) -> str:
        blocks = []
        for message in messages:
            if message.role == "system":
                blocks.append(f"Instructions:\n{message.content}")
            elif message.role == "user":
                blocks.append(f"{self._user_label}:\n{message.content}")
            else:
                blocks.append(f"{self._assistant_label}:\n{message.content}")
        return "\n\n".join(blocks)
