"""
Streaming Multipart Uploads

Reads the file field of a multipart/form-data request body as it arrives.
The body is fed to python-multipart's push parser chunk by chunk, so file
data is handed on as soon as it is parsed instead of being spooled first.
"""

from collections import deque
from typing import Any, AsyncIterator, List, Optional, Tuple

from python_multipart.exceptions import MultipartParseError
from python_multipart.multipart import MultipartParser, parse_options_header
from starlette.requests import Request


class MalformedUpload(Exception):
    """The request body is not a usable multipart upload"""
    pass


class MultipartUpload:
    """
    The first part of a multipart body, exposed as filename + chunk iterator.

    Any parts after the first are ignored.
    """

    def __init__(self, body: AsyncIterator[bytes], boundary: bytes):
        self._body = body.__aiter__()
        self._parser = MultipartParser(boundary, callbacks={
            "on_part_begin": self._on_part_begin,
            "on_part_data": self._on_part_data,
            "on_part_end": self._on_part_end,
            "on_header_field": self._on_header_field,
            "on_header_value": self._on_header_value,
            "on_header_end": self._on_header_end,
            "on_headers_finished": self._on_headers_finished,
            "on_end": self._on_end,
        })
        self._events: List[Tuple[str, Any]] = []
        self._header_field = b""
        self._header_value = b""
        self._headers = {}

        self._part_index = 0
        self._pending = deque()
        self._headers_ready = False
        self._file_done = False
        self._body_exhausted = False

        self.field_name: Optional[str] = None
        self.filename: Optional[str] = None

    @classmethod
    async def from_request(cls, request: Request) -> "MultipartUpload":
        """Validate the content type and read up to the end of the file field's headers"""
        content_type, params = parse_options_header(request.headers.get("content-type", ""))
        if content_type != b"multipart/form-data":
            raise MalformedUpload("Expected a multipart/form-data upload")
        boundary = params.get(b"boundary")
        if not boundary:
            raise MalformedUpload("Missing multipart boundary")

        upload = cls(request.stream(), boundary)
        await upload.read_headers()
        return upload

    # Parser callbacks - they only record what happened; _process_events acts on it

    def _on_part_begin(self) -> None:
        self._headers = {}
        self._events.append(("begin", None))

    def _on_part_data(self, data: bytes, start: int, end: int) -> None:
        self._events.append(("data", data[start:end]))

    def _on_part_end(self) -> None:
        self._events.append(("end", None))

    def _on_header_field(self, data: bytes, start: int, end: int) -> None:
        self._header_field += data[start:end]

    def _on_header_value(self, data: bytes, start: int, end: int) -> None:
        self._header_value += data[start:end]

    def _on_header_end(self) -> None:
        self._headers[self._header_field.lower()] = self._header_value
        self._header_field = b""
        self._header_value = b""

    def _on_headers_finished(self) -> None:
        self._events.append(("headers", dict(self._headers)))

    def _on_end(self) -> None:
        self._events.append(("eof", None))

    def _process_events(self) -> None:
        events, self._events = self._events, []
        for kind, payload in events:
            if kind == "begin":
                self._part_index += 1
            elif self._part_index != 1:
                continue
            elif kind == "headers":
                self._read_disposition(payload)
                self._headers_ready = True
            elif kind == "data":
                if payload:
                    self._pending.append(payload)
            elif kind == "end":
                self._file_done = True

    def _read_disposition(self, headers) -> None:
        disposition = headers.get(b"content-disposition")
        if not disposition:
            return
        _, options = parse_options_header(disposition)
        if b"name" in options:
            self.field_name = options[b"name"].decode('utf-8', errors='replace')
        if options.get(b"filename"):
            self.filename = options[b"filename"].decode('utf-8', errors='replace')

    async def _pump(self) -> None:
        """Feed one more body chunk to the parser"""
        try:
            chunk = await self._body.__anext__()
        except StopAsyncIteration:
            self._body_exhausted = True
            self._parser.finalize()
            self._process_events()
            return

        if chunk:
            try:
                self._parser.write(chunk)
            except MultipartParseError as e:
                raise MalformedUpload(f"Malformed multipart body: {e}") from e
        self._process_events()

    async def read_headers(self) -> None:
        while not self._headers_ready:
            if self._body_exhausted:
                raise MalformedUpload("Upload contains no file field")
            await self._pump()

    async def iter_chunks(self) -> AsyncIterator[bytes]:
        """File field data, in arrival order"""
        await self.read_headers()
        while True:
            while self._pending:
                yield self._pending.popleft()
            if self._file_done:
                return
            if self._body_exhausted:
                raise MalformedUpload("Upload ended before the file field was complete")
            await self._pump()
