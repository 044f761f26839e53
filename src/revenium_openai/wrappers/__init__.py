"""
Client Wrappers
===============
Instance patching, request routing and stream metering for OpenAI clients.
"""

from revenium_openai.wrappers.patcher import patch_openai_instance
from revenium_openai.wrappers.registry import InstanceRegistry
from revenium_openai.wrappers.router import Operation, RequestRouter
from revenium_openai.wrappers.streaming import MeteredAsyncStream, MeteredStream, StreamAccumulator

__all__ = [
    "patch_openai_instance",
    "InstanceRegistry",
    "Operation",
    "RequestRouter",
    "MeteredStream",
    "MeteredAsyncStream",
    "StreamAccumulator",
]
