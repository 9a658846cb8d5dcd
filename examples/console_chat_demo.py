"""Minimal demonstration of a streamed chat turn."""

import asyncio
import os
import sys

from chat_core import TokenPair, create_session


def render(messages):
    if messages and messages[-1].role == "assistant":
        sys.stdout.write("\rAssistant: " + messages[-1].content)
        sys.stdout.flush()


async def main():
    tokens = TokenPair(access=os.getenv("CHAT_ACCESS_TOKEN"), refresh=os.getenv("CHAT_REFRESH_TOKEN"))
    session = create_session(tokens=tokens, on_update=render)
    await session.open_conversation(os.getenv("CHAT_ASSISTANT_ID", "1"))
    question = "Привет! Что ты умеешь?"
    print("User:", question)
    await session.submit(question)
    while session.is_streaming or not any(m.role == "assistant" for m in session.messages):
        await asyncio.sleep(0.1)
    print()
    await session.close()


if __name__ == "__main__":
    asyncio.run(main())
