"""Test helpers: session log writer and fake collaborators."""

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

PROJECT = "-home-dev-webapp"

BASE_TIME = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeCounter:
    """One token per word plus four per message."""

    def count_text(self, text):
        return len(text.split()) if text else 0

    def count_messages(self, messages):
        return sum(4 + self.count_text(m.text_content) for m in messages)


def make_records(count, start=0, texts=None, words=10):
    """Alternating user/assistant JSONL records one minute apart."""
    records = []
    for i in range(start, start + count):
        role = "user" if i % 2 == 0 else "assistant"
        text = texts[i - start] if texts else " ".join(f"word{i}_{j}" for j in range(words))
        records.append({
            "type": role,
            "uuid": f"msg-{i:03d}",
            "parentUuid": f"msg-{i - 1:03d}" if i else None,
            "timestamp": (BASE_TIME + timedelta(minutes=i)).isoformat().replace("+00:00", "Z"),
            "cwd": "/home/dev/webapp",
            "gitBranch": "main",
            "version": "1.0.0",
            "message": {"role": role, "content": text},
        })
    return records


def write_records(path, records, mode="w"):
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, mode, encoding="utf-8") as f:
        for record in records:
            f.write(json.dumps(record) + "\n")
    return path


async def shorten(messages, settings):
    """Keep every other message, trimmed to 40 characters."""
    return {
        "messages": [
            {
                "uuid": m.uuid,
                "parentUuid": m.parent_uuid,
                "timestamp": m.timestamp,
                "role": m.role,
                "textContent": m.text_content[:40],
                "isSummarized": True,
            }
            for m in messages[::2]
        ],
        "tier_results": [{"range": "0-100%", "inputMessages": len(messages), "outputMessages": len(messages[::2])}],
    }
