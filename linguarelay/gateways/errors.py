# coding=utf-8
from __future__ import annotations


class GatewayError(RuntimeError):
    """An upstream engine call failed or timed out."""

    def __init__(self, gateway: str, message: str) -> None:
        super().__init__(f"{gateway}: {message}")
        self.gateway = gateway
        self.message = message
