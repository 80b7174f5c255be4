from http import HTTPStatus
from typing import Optional

import httpx

from .cancellation import CancellationToken
from .config import debug_print
from .dispatcher import RequestDispatcher
from .errors import StreamFailedError
from .reconciler import StreamReconciler

STREAM_PATH = "/messages/stream"


def regenerate_path(message_id: str) -> str:
    return f"/messages/{message_id}/regenerate/"


async def run_stream(
    dispatcher: RequestDispatcher,
    method: str,
    url: str,
    reconciler: StreamReconciler,
    *,
    json: Optional[dict] = None,
    cancellation: Optional[CancellationToken] = None,
    timeout: Optional[float] = None,
) -> None:
    """
    Open a streaming request and feed its body through `reconciler`.

    Buffers of channels that did not settle are discarded on every failure
    path (transport error, error status, early end of stream, cancellation,
    auth failure), so a failed turn never leaves half-built buffers behind.
    """
    kwargs = {}
    if json is not None:
        kwargs["json"] = json
    if timeout is not None:
        kwargs["timeout"] = timeout

    try:
        async with dispatcher.stream(method, url, **kwargs) as response:
            if response.status_code >= HTTPStatus.BAD_REQUEST:
                await response.aread()
                response.raise_for_status()
            settled = await reconciler.consume(response.aiter_text(), cancellation=cancellation)
    except httpx.HTTPStatusError as e:
        status = e.response.status_code
        debug_print(f"❌ Stream request failed with HTTP {status}: {e.response.text[:200]}")
        raise StreamFailedError(f"Stream request failed: HTTP {status}", status_code=status) from e
    except httpx.HTTPError as e:
        debug_print(f"❌ Stream transport error: {type(e).__name__}: {e}")
        raise StreamFailedError(f"Stream request failed: {e}") from e
    finally:
        if not reconciler.settled:
            reconciler.discard_pending()

    if not settled:
        raise StreamFailedError("Stream ended before every model finished")
