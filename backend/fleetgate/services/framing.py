class FrameBuffer:
    """
    Splits a TCP byte stream into discrete frames.

    - "(" ... ")" parenthesized vendor frames (TK103 style)
    - "{" ... "}" JSON objects, brace-balanced (strings are honoured)
    - everything else is newline terminated ("\\n" or "\\r\\n")

    Delimited frames never span lines: an unclosed "(" or "{" is cut at the
    next newline so the frames after it are not held back.

    A buffer that grows past max_frame_bytes without a terminator is flushed as
    one frame so a misbehaving device cannot grow memory without bound.
    """

    def __init__(self, max_frame_bytes: int = 4096):
        self.max_frame_bytes = max_frame_bytes
        self.buffer = b""

    def feed(self, data: bytes) -> list[bytes]:
        self.buffer += data
        frames = []
        while True:
            frame = self._next_frame()
            if frame is None:
                break
            if frame.strip():
                frames.append(frame.strip())
        if len(self.buffer) > self.max_frame_bytes:
            frames.append(self.buffer)
            self.buffer = b""
        return frames

    def flush(self) -> list[bytes]:
        """Whatever is left when the peer closes the connection."""
        rest, self.buffer = self.buffer.strip(), b""
        return [rest] if rest else []

    def _next_frame(self):
        # drop leading line noise between frames
        stripped = self.buffer.lstrip(b"\r\n\x00 ")
        if not stripped:
            self.buffer = b""
            return None
        self.buffer = stripped

        start = self.buffer[:1]
        if start == b"(":
            end = self.buffer.find(b")")
        elif start == b"{":
            end = _json_end(self.buffer)
        else:
            end = self.buffer.find(b"\n")
            if end != -1:
                frame, self.buffer = self.buffer[:end], self.buffer[end + 1:]
                return frame.rstrip(b"\r")
            return None

        # a newline before the closing delimiter ends a broken frame on its own line
        newline = self.buffer.find(b"\n")
        if newline != -1 and (end == -1 or newline < end):
            frame, self.buffer = self.buffer[:newline], self.buffer[newline + 1:]
            return frame.rstrip(b"\r")

        if end == -1:
            return None
        frame, self.buffer = self.buffer[:end + 1], self.buffer[end + 1:]
        return frame


def _json_end(data: bytes) -> int:
    depth = 0
    in_string = False
    escaped = False
    for i, byte in enumerate(data):
        ch = chr(byte)
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i
    return -1
