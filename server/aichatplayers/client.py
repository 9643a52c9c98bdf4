from __future__ import annotations

import argparse
import json
import sys
import time

import httpx


DEFAULT_URL = "http://127.0.0.1:8090"


def sample_request(now_ms: int | None = None) -> dict:
    now = int(time.time() * 1000) if now_ms is None else now_ms
    return {
        "request_id": "sample-req-001",
        "server": {"server_id": "betterbox-1", "mode": "LOBBY", "online_players": 42},
        "tick": 123456,
        "time_ms": now,
        "bots": [
            {
                "bot_id": "bot_01",
                "name": "Kuba",
                "online": True,
                "cooldown_ms": 0,
                "persona": {
                    "language": "pl",
                    "tone": "casual",
                    "style_tags": ["short", "memes_light"],
                    "avoid_topics": ["payments", "admin_powers", "cheating"],
                    "knowledge_level": "average_player",
                },
            },
            {
                "bot_id": "bot_02",
                "name": "Maja",
                "online": True,
                "cooldown_ms": 2000,
                "persona": {
                    "language": "pl",
                    "tone": "friendly",
                    "style_tags": ["helpful", "short"],
                    "avoid_topics": ["pvp_duel_requests"],
                    "knowledge_level": "newbie",
                },
            },
        ],
        "chat": [
            {"ts_ms": now - 2000, "sender": "RealPlayer123", "sender_type": "PLAYER", "message": "siema ktos idzie na pvp?"},
            {"ts_ms": now - 1000, "sender": "Admin", "sender_type": "SYSTEM", "message": "Event start za 5 minut!"},
        ],
        "settings": {
            "max_actions": 3,
            "min_delay_ms": 800,
            "max_delay_ms": 4500,
            "global_silence_chance": 0.25,
            "reply_chance": 0.65,
        },
    }


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Send a sample plan request to a running planner.")
    parser.add_argument("--url", default=DEFAULT_URL, help="base url of the planner service")
    parser.add_argument("--timeout", type=float, default=10.0, help="request timeout in seconds")
    args = parser.parse_args(argv)

    try:
        response = httpx.post(args.url.rstrip("/") + "/v1/plan", json=sample_request(), timeout=args.timeout)
    except httpx.HTTPError as exc:
        print(f"request failed: {exc}", file=sys.stderr)
        return 1

    print(f"status: {response.status_code} {response.reason_phrase}")
    try:
        print(json.dumps(response.json(), ensure_ascii=False, indent=2))
    except ValueError:
        print(response.text)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
