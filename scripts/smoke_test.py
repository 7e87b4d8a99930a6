#!/usr/bin/env python3
"""
Smoke Test Script

Validates configuration and runs one scripted dialog without a real client.

Checks:
1. Dependencies are importable
2. Configuration loads and validates
3. FastAPI app starts and /health returns OK
4. A registration dialog completes over the /ws protocol
"""

import os
import sys

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Short timers so the scripted dialog finishes quickly
os.environ.setdefault("ELDER_SILENCE_TIMEOUT_MS", "400")
os.environ.setdefault("AUTO_ADVANCE_MS", "200")
os.environ.setdefault("AIRLOCK_COOLDOWN_MS", "50")

SCRIPTED_ANSWERS = [
    "Ramesh Kumar",
    "nine eight seven six five four three two one zero",
    "male",
    "seventy two",
]


def print_header(text: str) -> None:
    """Print a section header."""
    print(f"\n{'=' * 50}")
    print(f" {text}")
    print('=' * 50)


def print_ok(text: str) -> None:
    print(f"  [OK] {text}")


def print_error(text: str) -> None:
    print(f"  [ERR] {text}")


def check_dependencies() -> bool:
    """Check that required dependencies are importable."""
    print_header("Checking Dependencies")

    dependencies = [
        ("fastapi", "FastAPI"),
        ("uvicorn", "Uvicorn"),
        ("structlog", "Structlog"),
        ("msgspec", "msgspec"),
        ("dotenv", "python-dotenv"),
        ("httpx", "HTTPX"),
    ]

    all_ok = True
    for module, name in dependencies:
        try:
            __import__(module)
            print_ok(name)
        except ImportError as e:
            print_error(f"{name}: {e}")
            all_ok = False

    return all_ok


def check_config() -> bool:
    """Load and validate configuration."""
    print_header("Checking Configuration")

    from src.dialog.config import ConfigError, get_config

    config = get_config()
    try:
        config.validate()
    except ConfigError as e:
        print_error(str(e))
        return False

    print_ok(f"DEFAULT_LOCALE: {config.default_locale}")
    print_ok(f"ELDER_ROUTES: {', '.join(config.elder_routes)}")
    print_ok(f"OTP_DEADLINE_MS: {config.otp_deadline_ms}")
    return True


def check_health_endpoint(client) -> bool:
    """Check that the FastAPI /health endpoint works."""
    print_header("Testing Health Endpoint")

    response = client.get("/health")
    if response.status_code != 200:
        print_error(f"Health endpoint returned status {response.status_code}")
        return False

    data = response.json()
    if data.get("status") != "healthy":
        print_error(f"Unexpected response: {data}")
        return False

    print_ok("Health endpoint returned healthy")
    return True


def check_dialog(client) -> bool:
    """Play the client side of a registration dialog."""
    print_header("Running Registration Dialog")

    answers = list(SCRIPTED_ANSWERS)
    with client.websocket_connect("/ws") as ws:
        ws.send_json({
            "type": "hello",
            "locale": "en-IN",
            "route": "/register",
            "capabilities": {"recognition": True, "otp": False},
            "client": "smoke-test",
        })
        ready = ws.receive_json()
        if ready.get("type") != "ready":
            print_error(f"Expected ready, got {ready}")
            return False
        print_ok(f"Session {ready['session_id']} ready")

        ws.send_json({"type": "start_flow", "flow": "registration"})

        while True:
            message = ws.receive_json()
            kind = message["type"]
            if kind == "speak":
                print(f"    engine: {message['text']}")
                ws.send_json({"type": "speech_end", "sid": message["sid"], "outcome": "completed"})
            elif kind == "start_recognition":
                if not answers:
                    print_error("Engine kept listening after the last scripted answer")
                    return False
                answer = answers.pop(0)
                print(f"    user:   {answer}")
                ws.send_json({"type": "transcript", "rid": message["rid"], "text": answer, "is_final": True})
            elif kind == "unsupported":
                print_error(f"Unsupported: {message}")
                return False
            elif kind == "flow_result":
                break

    if message["status"] != "completed":
        print_error(f"Flow ended {message['status']} at step {message['step']}")
        return False

    print_ok(f"Flow completed with outcome '{message['outcome']}'")
    return True


def main() -> int:
    """Run all smoke tests."""
    print("\n" + "=" * 50)
    print(" VOICE DIALOG ENGINE - SMOKE TEST")
    print("=" * 50)

    results = []
    results.append(("Dependencies", check_dependencies()))
    if not results[-1][1]:
        print("[ERR] Install dependencies first: pip install -e '.[test]'")
        return 1

    results.append(("Configuration", check_config()))

    from fastapi.testclient import TestClient
    from server.app import app

    with TestClient(app) as client:
        results.append(("Health Endpoint", check_health_endpoint(client)))
        results.append(("Registration Dialog", check_dialog(client)))

    # Summary
    print_header("Summary")

    all_passed = True
    for name, passed in results:
        if passed:
            print_ok(name)
        else:
            print_error(name)
            all_passed = False

    print()

    if all_passed:
        print("[OK] All checks passed!")
        print("\nNext steps:")
        print("  1. Run 'voice-dialog-server' to start the server")
        print("  2. Connect a speech-capable client to ws://localhost:7860/ws")
        return 0

    print("[ERR] Some checks failed. Please fix the issues above.")
    return 1


if __name__ == "__main__":
    sys.exit(main())
