"""
Example 01: Basic Chat
======================

Demonstrates end-to-end usage of ChatSession:
- Opening a session with open()
- Sending messages in a loop and watching the title get set
- Low compaction thresholds so the running summary kicks in
- Editing, deleting and regenerating turns
- Reopening the conversation with load()

Run without an API key:
    CONVOKEEP_MOCK_LLM=1 python examples/01_basic_chat.py

Run with a real model (set your API key first):
    MISTRAL_API_KEY=... python examples/01_basic_chat.py
"""

import asyncio
import sys
from pathlib import Path

# Add project root to path when running directly
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))


async def main() -> None:
    from convokeep import ChatConfig, ChatEvent, ChatSession, CompactionConfig

    print("=== convokeep Basic Chat Example ===\n")

    # Small thresholds so compaction happens within a short demo
    config = ChatConfig(compaction=CompactionConfig(summarize_after=8, keep_recent=4))
    db_path = "/tmp/convokeep_example_01.db"

    async with ChatSession.open(
        config=config,
        system_prompt="You are a helpful coding assistant. Be concise.",
        db_path=db_path,
    ) as session:
        session.subscribe(
            ChatEvent.COMPACTION_COMPLETED,
            lambda event, payload: print(
                f"  [compacted {payload['compacted_turn_count']} turns]"
            ),
        )
        print(f"Conversation created: {session.id}\n")

        questions = [
            "What is Python's GIL?",
            "How does asyncio work at a high level?",
            "What's the difference between async/await and threading?",
            "When should I use asyncio vs multiprocessing?",
            "Can you show a simple asyncio example?",
        ]
        for i, question in enumerate(questions, 1):
            print(f"Turn {i}: {question}")
            result = await session.send(question)
            print(f"  -> {result.text[:80]}")
            if result.title_updated:
                print(f"  [title: {session.title!r}]")

        print(f"\nTurns kept verbatim: {len(session.turns)}")
        print(f"Running summary: {session.running_summary[:120]!r}\n")

        # Point edits and regeneration
        await session.edit(len(session.turns) - 2, "Show an asyncio example with gather().")
        regenerated = await session.regenerate(len(session.turns) - 1)
        print(f"Regenerated reply: {regenerated.assistant_turn.content[:80]}")

        await session.delete(1)
        print(f"After delete: indices {[t.idx for t in session.turns]}")
        conversation_id = session.id

    # Reopen from the database
    session = await ChatSession.load(conversation_id, db_path=db_path)
    print(f"\nReloaded {len(session.turns)} turns, title {session.title!r}")
    await session.close()


if __name__ == "__main__":
    asyncio.run(main())
