"""
Accounting decorator around the ASGI ``send`` callable.

The ASGI ``send`` callable is the transport-level response sink: any
ASGI server (Uvicorn in production, ``httpx.ASGITransport`` in tests)
provides one, and the middleware in this package depend on nothing
else.  ``ResponseInterceptor`` wraps such a callable and records two
facts about the response while forwarding every message unchanged:

- ``status_code``: the status of the *first* ``http.response.start``
  message.  Later start messages are still forwarded (the transport
  decides whether to reject them) but never overwrite the recorded
  value.
- ``bytes_written``: the cumulative length of every
  ``http.response.body`` chunk, counted before the chunk is forwarded.

The interceptor never buffers, and exceptions raised by the wrapped
``send`` propagate to whoever called it.

One interceptor is shared by every middleware handling a request:
``bind_response_interceptor`` stores it in ``scope["state"]`` the first
time it is asked for and returns the same instance afterwards.
"""

import collections.abc

import starlette.types

RESPONSE_INTERCEPTOR_STATE_KEY = "response_interceptor"

# Status value meaning "no http.response.start has been sent yet".
UNSET_STATUS_CODE = 0


class ResponseInterceptor:
    """
    Record the first status code and the total body bytes of a response.
    """

    def __init__(self, send: starlette.types.Send) -> None:
        self._send = send
        self.status_code: int = UNSET_STATUS_CODE
        self.bytes_written: int = 0

    @property
    def written(self) -> bool:
        """``True`` once a status code has been sent for this response."""
        return self.status_code != UNSET_STATUS_CODE

    def is_written(self) -> bool:
        return self.written

    async def send(self, message: starlette.types.Message) -> None:
        """
        ASGI ``send`` replacement handed to downstream applications.
        """
        message_type = message["type"]
        if message_type == "http.response.start":
            if self.status_code == UNSET_STATUS_CODE:
                self.status_code = message["status"]
        elif message_type == "http.response.body":
            self.bytes_written += len(message.get("body", b""))
        await self._send(message)

    async def set_status(
        self,
        status_code: int,
        headers: collections.abc.Iterable[tuple[bytes, bytes]] = (),
    ) -> None:
        await self.send(
            {
                "type": "http.response.start",
                "status": status_code,
                "headers": list(headers),
            }
        )

    async def write(self, body: bytes, *, more_body: bool = False) -> None:
        await self.send(
            {
                "type": "http.response.body",
                "body": body,
                "more_body": more_body,
            }
        )


def bind_response_interceptor(
    scope: starlette.types.Scope,
    send: starlette.types.Send,
) -> ResponseInterceptor:
    """
    Return the interceptor shared by this request, creating it on first use.

    The first caller's ``send`` becomes the wrapped sink.  Later callers
    receive the existing interceptor and must forward downstream through
    ``interceptor.send`` (which is what they were handed by the outer
    middleware in the first place), so no chunk is counted twice.
    """
    state = scope.setdefault("state", {})
    response_interceptor = state.get(RESPONSE_INTERCEPTOR_STATE_KEY)
    if response_interceptor is None:
        response_interceptor = ResponseInterceptor(send)
        state[RESPONSE_INTERCEPTOR_STATE_KEY] = response_interceptor
    return response_interceptor
