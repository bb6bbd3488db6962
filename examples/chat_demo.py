"""Minimal demonstration of a streamed multi-turn conversation."""

import asyncio

from chat_core import SendMessageOptions, create_client


async def main() -> None:
    client = create_client()
    first = await client.send_message(
        "用一句话介绍一下你自己",
        SendMessageOptions(on_progress=lambda m: print(m.delta or "", end="", flush=True)),
    )
    print()
    second = await client.send_message("再说得简短一点", SendMessageOptions(parent_message_id=first.id))
    print("Assistant:", second.text)
    print("Usage:", second.usage)


if __name__ == "__main__":
    asyncio.run(main())
