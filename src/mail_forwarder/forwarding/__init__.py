"""Polling and forwarding engine."""

from .backoff import ExponentialBackoff
from .pipeline import ForwardPipeline
from .supervisor import Supervisor
from .worker import PollWorker

__all__ = ["ExponentialBackoff", "ForwardPipeline", "PollWorker", "Supervisor"]
