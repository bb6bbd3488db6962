"""增量式 Server-Sent Events 分帧器。

按 SSE 规范逐行解析 event/data/id/retry 字段，多行 data 以 "\n" 拼接，
遇到空行完成一个事件。输入可以在任意位置被切成多个 chunk。
"""

from dataclasses import dataclass
from typing import Callable, List, Literal, Optional


@dataclass
class ParsedEvent:
    type: Literal["event", "reconnect-interval"]
    data: str = ""
    event: Optional[str] = None
    id: Optional[str] = None
    value: Optional[int] = None


class SSEParser:
    def __init__(self, on_event: Callable[[ParsedEvent], None]):
        self._on_event = on_event
        self.reset()

    def reset(self) -> None:
        self._buffer = ""
        self._is_first_chunk = True
        self._pending_cr = False
        self._data: List[str] = []
        self._event_name: Optional[str] = None
        self._event_id: Optional[str] = None

    def feed(self, chunk: str) -> None:
        if self._is_first_chunk:
            # 首个 chunk 的 BOM 不属于事件内容
            if chunk.startswith("\ufeff"):
                chunk = chunk[1:]
            self._is_first_chunk = False

        # 上一 chunk 以 \r 结尾时，本 chunk 开头的 \n 属于同一个换行
        if self._pending_cr and chunk.startswith("\n"):
            chunk = chunk[1:]
        self._pending_cr = chunk.endswith("\r")

        self._buffer += chunk
        lines = self._buffer.replace("\r\n", "\n").replace("\r", "\n").split("\n")
        self._buffer = lines.pop()
        for line in lines:
            self._parse_line(line)

    def _parse_line(self, line: str) -> None:
        if line == "":
            self._dispatch()
            return
        if line.startswith(":"):
            return

        if ":" in line:
            field, value = line.split(":", 1)
            if value.startswith(" "):
                value = value[1:]
        else:
            field, value = line, ""

        if field == "data":
            self._data.append(value)
        elif field == "event":
            self._event_name = value
        elif field == "id":
            if "\x00" not in value:
                self._event_id = value
        elif field == "retry":
            if value.isdigit():
                self._on_event(ParsedEvent(type="reconnect-interval", value=int(value)))

    def _dispatch(self) -> None:
        if self._data:
            self._on_event(
                ParsedEvent(
                    type="event",
                    data="\n".join(self._data),
                    event=self._event_name or None,
                    id=self._event_id,
                )
            )
        self._data = []
        self._event_name = None
