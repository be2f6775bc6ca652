"""Tests for response decoding and response streams."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest

from dockwire.errors import (
    CallCancelledError,
    CallTimeoutError,
    DecodeError,
    HttpStatusError,
    InvocationError,
)
from dockwire.response import ResponseStream, ResultKind, decode

from .conftest import create_mock_response


class TestResultKind:
    """Tests for ResultKind coercion."""

    def test_from_string(self):
        assert ResultKind.coerce("stream") is ResultKind.STREAM
        assert ResultKind.coerce(ResultKind.VALUE) is ResultKind.VALUE

    def test_unknown(self):
        with pytest.raises(ValueError, match="socket"):
            ResultKind.coerce("socket")


class TestDecode:
    """Tests for decode()."""

    async def test_value(self):
        """Test JSON bodies decode into Python values."""
        response = create_mock_response(status=201, read_data=b'{"Id": "abc", "Warnings": []}')

        assert await decode(response, ResultKind.VALUE) == {"Id": "abc", "Warnings": []}

    async def test_string(self):
        """Test string results are returned without parsing."""
        response = create_mock_response(read_data=b"OK")

        assert await decode(response, ResultKind.STRING) == "OK"

    async def test_empty_string(self):
        """Test an empty 2xx body decodes to an empty string."""
        response = create_mock_response(status=204)

        assert await decode(response, ResultKind.STRING) == ""

    async def test_string_does_not_parse_json(self):
        """Test string results keep JSON text literal."""
        response = create_mock_response(read_data=b'{"a": 1}')

        assert await decode(response, ResultKind.STRING) == '{"a": 1}'

    async def test_empty_value_fails(self):
        """Test a value result needs a body."""
        response = create_mock_response(status=204)

        with pytest.raises(DecodeError, match="empty"):
            await decode(response, ResultKind.VALUE)

    async def test_invalid_json_fails(self):
        """Test a value result needs valid JSON."""
        response = create_mock_response(read_data=b"OK")

        with pytest.raises(DecodeError):
            await decode(response, ResultKind.VALUE)

    @pytest.mark.parametrize("kind", [ResultKind.VALUE, ResultKind.STRING])
    async def test_status_error(self, kind):
        """Test non-2xx statuses fail for every result kind."""
        body = '{"message": "No such container: conny"}'
        response = create_mock_response(status=404, text_data=body)

        with pytest.raises(HttpStatusError, match="No such container: conny") as exc_info:
            await decode(response, kind)

        assert exc_info.value.code == 404
        assert exc_info.value.body == body
        response.read.assert_not_called()

    async def test_status_error_plain_body(self):
        """Test non-JSON error bodies are reported verbatim."""
        response = create_mock_response(status=500, text_data="boom")

        with pytest.raises(HttpStatusError, match="HTTP 500: boom"):
            await decode(response, ResultKind.STRING)

    async def test_stream_kind_is_not_buffered(self):
        """Test decode refuses to buffer a streaming result."""
        with pytest.raises(ValueError):
            await decode(create_mock_response(), ResultKind.STREAM)


def _stream_response(*, eof_after_read: bool = False) -> MagicMock:
    response = MagicMock()
    response.status = 200
    content = MagicMock()
    content.read = AsyncMock(return_value=b"chunk")
    content.readline = AsyncMock(return_value=b"line\n")
    content.at_eof = MagicMock(return_value=eof_after_read)
    response.content = content
    return response


class TestResponseStream:
    """Tests for ResponseStream."""

    async def test_read(self):
        """Test reads are forwarded to the response content."""
        response = _stream_response()
        stream = ResponseStream(response)

        assert await stream.read(5) == b"chunk"
        response.content.read.assert_awaited_once_with(5)

    async def test_drain_finishes_once(self):
        """Test reaching EOF reports completion exactly once."""
        finished = MagicMock()
        stream = ResponseStream(_stream_response(eof_after_read=True), on_finish=finished)

        await stream.read()
        await stream.read()

        finished.assert_called_once_with(None)

    async def test_close_before_eof_closes_connection(self):
        """Test closing an undrained stream drops the connection."""
        finished = MagicMock()
        response = _stream_response()
        stream = ResponseStream(response, on_finish=finished)

        stream.close()
        stream.close()

        response.close.assert_called_once()
        response.release.assert_not_called()
        finished.assert_called_once_with(None)
        with pytest.raises(InvocationError, match="closed"):
            await stream.read()

    async def test_close_after_eof_releases(self):
        """Test closing a drained stream returns the connection to the pool."""
        response = _stream_response(eof_after_read=True)

        async with ResponseStream(response) as stream:
            await stream.read()

        response.release.assert_called_once()
        response.close.assert_not_called()

    async def test_abort_errors_later_reads(self):
        """Test an aborted stream raises instead of reporting EOF."""
        finished = MagicMock()
        response = _stream_response()
        stream = ResponseStream(response, on_finish=finished)
        error = CallCancelledError("cancelled")

        stream.abort(error)

        response.content.set_exception.assert_called_once_with(error)
        response.close.assert_called_once()
        with pytest.raises(CallCancelledError):
            await stream.read(10)
        response.content.read.assert_not_called()
        finished.assert_not_called()

    async def test_abort_error_wins_over_transport_error(self):
        """Test the abort reason is raised when the transport also fails."""
        response = _stream_response()
        stream = ResponseStream(response)
        error = CallCancelledError("cancelled")

        async def severed_read(_n: int) -> bytes:
            stream.abort(error)
            raise aiohttp.ClientPayloadError("Response payload is not completed")

        response.content.read.side_effect = severed_read

        with pytest.raises(CallCancelledError) as exc_info:
            await stream.read(1)

        assert exc_info.value is error

    async def test_transport_error_fails_stream(self):
        """Test a broken connection surfaces as an invocation error."""
        finished = MagicMock()
        response = _stream_response()
        response.content.read.side_effect = aiohttp.ClientPayloadError("lost")
        stream = ResponseStream(response, on_finish=finished)

        with pytest.raises(InvocationError, match="lost"):
            await stream.read(1)

        assert stream.closed
        finished.assert_called_once()
        assert isinstance(finished.call_args.args[0], InvocationError)

    async def test_read_timeout(self):
        """Test a socket read timeout surfaces as a call timeout."""
        response = _stream_response()
        response.content.read.side_effect = aiohttp.ServerTimeoutError("slow")
        stream = ResponseStream(response)

        with pytest.raises(CallTimeoutError):
            await stream.read(1)

    async def test_iterates_lines(self):
        """Test async iteration yields lines until EOF."""
        response = _stream_response()
        response.content.readline.side_effect = [b"a\n", b"b\n", b""]

        lines = [line async for line in ResponseStream(response)]

        assert lines == [b"a\n", b"b\n"]
