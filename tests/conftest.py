"""Shared test fixtures for Courier test suite."""

import json

import httpx
import pytest

from courier.builtins import register_builtin_commands
from courier.callback import CallbackClient, RetryPolicy
from courier.config import CourierConfig
from courier.context import CourierContext
from courier.job_queue import JobQueue
from courier.registry import CommandRegistry
from courier.sessions import SessionStore

TEST_SECRET = "test-secret"
TEST_AGENT_ID = "test-agent"


async def no_sleep(delay):
    return None


@pytest.fixture
def queue(tmp_path):
    """Provide a JobQueue rooted in a temporary directory."""
    return JobQueue(tmp_path / "jobs")


@pytest.fixture
def sessions(tmp_path):
    """Provide a SessionStore backed by a temporary file."""
    return SessionStore(tmp_path / "data" / "sessions.json")


@pytest.fixture
def registry():
    """Provide a registry holding only the built-in commands."""
    return register_builtin_commands(CommandRegistry())


@pytest.fixture
def config(tmp_path):
    """Provide a config whose storage lives under tmp_path."""
    cfg = CourierConfig()
    cfg.queue.root = str(tmp_path / "jobs")
    cfg.sessions.path = str(tmp_path / "data" / "sessions.json")
    cfg.webhook.secret = TEST_SECRET
    cfg.webhook.agent_id = TEST_AGENT_ID
    cfg.callback.api_url = "https://tasks.test"
    cfg.worker.task_timeout_seconds = 10
    cfg.worker.kill_grace_seconds = 0.5
    return cfg


@pytest.fixture
def callback_requests():
    """Requests captured by the mock callback transport."""
    return []


@pytest.fixture
def callback_client(callback_requests):
    """CallbackClient that records requests instead of sending them."""

    def handler(request: httpx.Request) -> httpx.Response:
        callback_requests.append(
            {"url": str(request.url), "headers": dict(request.headers), "body": json.loads(request.content)}
        )
        return httpx.Response(200, json={"ok": True})

    return CallbackClient(
        TEST_AGENT_ID,
        TEST_SECRET,
        "https://tasks.test",
        policy=RetryPolicy(max_retries=2, base_delay=0),
        transport=httpx.MockTransport(handler),
        sleep=no_sleep,
    )


@pytest.fixture
def context(config, callback_client):
    """Provide a live CourierContext with temporary storage."""
    return CourierContext(config, callback_client=callback_client)
