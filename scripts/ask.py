#!/usr/bin/env python3
"""
Interactive CLI for the streaming chat endpoint.

This script:
- Sends each question to /v1/chat and prints answer fragments as they stream.
- Keeps the conversation_id across turns (from the X-Conversation-Id header).
- Prints the citations preamble, and reports streams that end without [DONE].

Usage:
  1. Start the FastAPI server:
       uvicorn kbchat.main:app --reload

  2. Get a token and run this script:
       export KBCHAT_TOKEN=$(python scripts/issue_token.py --email you@example.com)
       python scripts/ask.py
"""

from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Any, Dict

import httpx

# Add the parent directory to the path so we can import from kbchat
sys.path.insert(0, str(Path(__file__).parent.parent))

from kbchat.services.errors import IncompleteStreamError
from kbchat.services.sse import SSEDecoder

API_BASE_URL = os.getenv("KBCHAT_API_URL", "http://localhost:8000")
CHAT_ENDPOINT = f"{API_BASE_URL}/v1/chat"


def ask(client: httpx.Client, question: str, conversation_id: str | None) -> str | None:
    payload: Dict[str, Any] = {"question": question}
    if conversation_id:
        payload["conversation_id"] = conversation_id

    decoder = SSEDecoder()
    with client.stream("POST", CHAT_ENDPOINT, json=payload) as resp:
        if resp.status_code != 200:
            resp.read()
            try:
                error = resp.json().get("error") or resp.json().get("detail")
            except ValueError:
                error = resp.text
            print(f"[ERROR] {resp.status_code}: {error}")
            return conversation_id

        conversation_id = resp.headers.get("X-Conversation-Id", conversation_id)
        print("\nAssistant: ", end="", flush=True)
        for chunk in resp.iter_bytes():
            for fragment in decoder.feed(chunk):
                print(fragment, end="", flush=True)

    try:
        decoder.finish()
    except IncompleteStreamError as exc:
        print(f"\n[ERROR] {exc.message}")
        return conversation_id

    print("\n")
    for citation in decoder.citations:
        similarity = f" ({citation['similarity']}%)" if "similarity" in citation else ""
        print(f"  [Row {citation['row_number']}]{similarity} {citation['excerpt']}")
    print("")
    return conversation_id


def main() -> None:
    token = os.getenv("KBCHAT_TOKEN")
    if not token:
        print("Set KBCHAT_TOKEN (see scripts/issue_token.py)")
        sys.exit(1)

    print("KB Chat CLI")
    print("=" * 60)
    print(f"Endpoint: {CHAT_ENDPOINT}")
    print("Type 'exit' to end the conversation.\n")

    conversation_id: str | None = None
    headers = {"Authorization": f"Bearer {token}"}
    with httpx.Client(timeout=120.0, headers=headers) as client:
        while True:
            question = input("You: ").strip()
            if not question:
                continue
            if question.lower() in {"exit", "quit"}:
                print("Ending conversation.")
                break
            try:
                conversation_id = ask(client, question, conversation_id)
            except httpx.RequestError as exc:
                print(f"[ERROR] Request failed: {exc}")
                break


if __name__ == "__main__":
    main()
