"""Courier: route chat and webhook commands into a durable, priority-ordered job queue."""

__version__ = "0.1.0"

from courier.context import CourierContext, get_default_context
from courier.events import EventCollector, ExecutionListener
from courier.executor import Executor, strip_live_actions
from courier.job_queue import Job, JobQueue
from courier.parser import parse_message
from courier.registry import CommandRegistry
from courier.schema import CommandDefinition, Priority
from courier.sessions import SessionStore
from courier.signing import sign, verify
from courier.worker import WorkerPool

__all__ = [
    "CourierContext",
    "get_default_context",
    "EventCollector",
    "ExecutionListener",
    "Executor",
    "strip_live_actions",
    "Job",
    "JobQueue",
    "parse_message",
    "CommandRegistry",
    "CommandDefinition",
    "Priority",
    "SessionStore",
    "sign",
    "verify",
    "WorkerPool",
]
