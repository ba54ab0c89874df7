from collections.abc import AsyncIterator

import httpx


async def iter_sse_data(response: httpx.Response) -> AsyncIterator[str]:
    """Yield the ``data`` payload of each Server-Sent Event in a response.

    Multi-line data fields are joined with newlines, comments and other
    fields (``event``, ``id``, ``retry``) are skipped.
    """
    data_lines: list[str] = []

    async for line in response.aiter_lines():
        if not line:
            if data_lines:
                yield "\n".join(data_lines)
                data_lines = []

            continue

        if line.startswith(":"):
            continue

        field, _, value = line.partition(":")

        if value.startswith(" "):
            value = value[1:]

        if field == "data":
            data_lines.append(value)

    if data_lines:
        yield "\n".join(data_lines)
