"""Inline source attachments embedded in job submissions.

A submission's ``source`` field is either empty, a URL the executor will
download itself, or an inline attachment shaped like a data URI::

    data:application/zip;name=site.zip;base64,UEsDBBQ...

Only the last form is decoded here; the bytes are written under the sources
folder and the job args are rewritten to reference them by name.
"""
import base64
import binascii
import logging
import re
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from .errors import DecodeError, PathTraversalError
from .models import DecodedSource

URL_RE = re.compile(
    r"https?://(www\.)?[-a-zA-Z0-9@:%._\+~#=]{2,256}\.[a-z]{2,4}\b([-a-zA-Z0-9@:%_\+.~#?&//=]*)",
    re.IGNORECASE,
)
DEFAULT_EXTENSION = ".zip"


def _split_filename(filename: str):
    parts = filename.split(".")
    if len(parts) > 1 and parts[-1]:
        return ".".join(parts[:-1]), f".{parts[-1]}"
    return filename.rstrip("."), DEFAULT_EXTENSION


def _unsafe(filename: str) -> bool:
    return "/" in filename or "\\" in filename or "\x00" in filename or filename in {".", ".."}


class PayloadDecoder:
    def __init__(self, sources_dir):
        self.sources_dir = Path(sources_dir)

    def decode(self, raw: Optional[str]) -> Optional[DecodedSource]:
        """Decode ``raw`` and write it to the sources folder.

        Returns None when there is nothing to decode (empty value or URL).
        """
        decoded = self.prepare(raw)
        if decoded is not None:
            self.write(decoded)
        return decoded

    def prepare(self, raw: Optional[str]) -> Optional[DecodedSource]:
        """Validate and decode ``raw`` without touching the sources folder."""
        if not raw:
            return None
        if not isinstance(raw, str):
            raise DecodeError("source must be a string", repr(raw))
        if URL_RE.search(raw):
            return None

        comma = raw.find(",")
        if comma < 0:
            raise DecodeError("comma not found in inline source", raw)
        metadata, payload = raw[:comma], raw[comma + 1:]

        marker = metadata.rfind("name=")
        if marker < 0:
            raise DecodeError("name= field absent from inline source", raw)
        filename = metadata[marker + len("name="):].split(";")[0]
        if not filename:
            raise DecodeError("name= field is empty", raw)

        if _unsafe(filename):
            raise PathTraversalError(filename, str(self.sources_dir))
        name, extension = _split_filename(filename)
        if not name:
            raise DecodeError(f"no usable name in {filename!r}", raw)

        root = self.sources_dir.resolve()
        target = (root / f"{name}{extension}").resolve()
        if target.parent != root:
            raise PathTraversalError(filename, str(root))

        try:
            data = base64.b64decode("".join(payload.split()), validate=True)
        except (binascii.Error, ValueError) as exc:
            raise DecodeError(f"invalid base64 payload: {exc}", raw) from exc

        return DecodedSource(stored_name=name, extension=extension, path=str(target), data=data)

    def write(self, decoded: DecodedSource) -> None:
        Path(decoded.path).write_bytes(decoded.data)
        logging.debug("Decoded inline source %s (%d bytes)", decoded.path, len(decoded.data))

    def prepare_args(self, args: Dict[str, Any]) -> Tuple[Dict[str, Any], Optional[DecodedSource]]:
        """Return the args to store and the source still to be written, if any."""
        decoded = self.prepare(args.get("source"))
        if decoded is None:
            return args, None
        return {**args, "source": decoded.stored_name, "sourceExt": decoded.extension}, decoded
