"""
Kula Transport Module
=====================
Talks to the Kula advisory service.

One endpoint, one operation:
    POST <base-url>/interact   {"message": "..."}  ->  {"reply": "..."}

Every way a request can go wrong (timeout, DNS, refused connection, 4xx,
5xx, a body without a reply) collapses into a single failure outcome.
"""

import asyncio
import time
from typing import Optional

import requests


class TransportError(Exception):
    """The request did not produce a usable reply."""


class TransportResult:
    """Outcome of one interact() call: either a reply or a failure."""

    __slots__ = ("reply", "error", "latency")

    def __init__(self, reply: Optional[str] = None, error: Optional[str] = None, latency: float = 0.0):
        self.reply = reply
        self.error = error
        self.latency = latency

    @property
    def ok(self) -> bool:
        return self.reply is not None

    @classmethod
    def success(cls, reply: str, latency: float = 0.0) -> "TransportResult":
        return cls(reply=reply, latency=latency)

    @classmethod
    def failure(cls, error: str, latency: float = 0.0) -> "TransportResult":
        return cls(error=error, latency=latency)

    def __repr__(self):
        if self.ok:
            return f"TransportResult(success, {len(self.reply)} chars)"
        return f"TransportResult(failure, {self.error!r})"


class RemoteTransport:
    """
    Request/response client for the advisory service.
    """

    def __init__(self, interact_url: str, timeout: float = 60.0, session: requests.Session = None):
        """
        Args:
            interact_url: Full URL of the /interact endpoint
            timeout: Bound on the whole request, in seconds
            session: Optional requests session (connection reuse)
        """
        self.interact_url = interact_url
        self.timeout = timeout
        self._session = session or requests.Session()

    def close(self):
        self._session.close()

    def _post(self, message: str) -> str:
        """Blocking request. Raises TransportError on any failure."""
        try:
            response = self._session.post(
                self.interact_url,
                json={"message": message},
                timeout=self.timeout,
            )
        except requests.Timeout:
            raise TransportError(f"No reply within {self.timeout:g}s")
        except requests.RequestException as e:
            raise TransportError(str(e))

        # Anything outside 2xx is a failure, body unread
        if not 200 <= response.status_code < 300:
            raise TransportError(f"Server answered HTTP {response.status_code}")

        try:
            reply = response.json()["reply"]
        except (ValueError, KeyError, TypeError):
            raise TransportError("Response did not contain a reply")

        if not isinstance(reply, str):
            raise TransportError("Reply was not text")
        return reply

    async def interact(self, message: str) -> TransportResult:
        """
        Send one message and wait for the reply.

        Never raises for network problems - check `result.ok`.
        """
        loop = asyncio.get_running_loop()
        start_time = time.time()

        try:
            # requests' timeout is per socket operation; this bounds the total
            reply = await asyncio.wait_for(
                loop.run_in_executor(None, self._post, message),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            return TransportResult.failure(f"No reply within {self.timeout:g}s", time.time() - start_time)
        except TransportError as e:
            return TransportResult.failure(str(e), time.time() - start_time)
        except Exception as e:
            return TransportResult.failure(f"Unexpected error: {e}", time.time() - start_time)

        return TransportResult.success(reply, time.time() - start_time)
