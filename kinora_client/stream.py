"""
Streaming text decoding utilities.
"""
import codecs
import json
from dataclasses import dataclass
from typing import Optional, Union


@dataclass
class Reply:
    answer: str
    comments: str = ""


class StreamingReply:
    """
    Accumulates a reply from an ordered byte stream.

    Chunks may split multi-byte characters; the incremental decoder holds the
    partial bytes until the rest arrives. There is no end marker: the reply
    is complete once `close()` is called on stream closure.
    """

    def __init__(self, encoding: str = "utf-8"):
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._parts: list[str] = []
        self.closed = False

    @property
    def content(self) -> str:
        return "".join(self._parts)

    def feed(self, chunk: Union[bytes, str]) -> str:
        """Append one chunk and return the text it contributed."""
        if self.closed:
            raise RuntimeError("Cannot feed a closed stream")
        text = chunk if isinstance(chunk, str) else self._decoder.decode(chunk)
        if text:
            self._parts.append(text)
        return text

    def close(self) -> str:
        if not self.closed:
            tail = self._decoder.decode(b"", final=True)
            if tail:
                self._parts.append(tail)
            self.closed = True
        return self.content


def _parse_json_line(line: str) -> Optional[Reply]:
    try:
        data = json.loads(line)
    except ValueError:
        return None
    if not isinstance(data, dict) or "Answer" not in data:
        return None
    return Reply(answer=str(data.get("Answer") or ""), comments=str(data.get("Comments") or ""))


def parse_reply(content: str) -> Reply:
    """
    Split a finished reply into the part to speak and learner comments.

    Replies made of `{"Answer", "Comments"}` JSON lines are joined line by
    line; anything else is treated as plain text and spoken whole.
    """
    lines = [ln.strip() for ln in content.splitlines() if ln.strip()]
    if not lines:
        return Reply(answer="")

    parsed = [_parse_json_line(ln) for ln in lines]
    if any(p is None for p in parsed):
        return Reply(answer=content.strip())

    return Reply(
        answer=" ".join(p.answer for p in parsed if p.answer),
        comments="\n".join(p.comments for p in parsed if p.comments),
    )
