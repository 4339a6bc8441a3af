import base64

import pytest

from quasar_api.decoder import PayloadDecoder
from quasar_api.errors import DecodeError, PathTraversalError


def _files(decoder):
    return sorted(p.name for p in decoder.sources_dir.iterdir())


def test_decode_keeps_inner_dots_in_name(decoder):
    result = decoder.decode("data:text/plain;name=report.final.txt;base64,SGVsbG8=")

    assert result.stored_name == "report.final"
    assert result.extension == ".txt"
    assert (decoder.sources_dir / "report.final.txt").read_bytes() == b"Hello"


def test_decode_defaults_extension_to_zip(decoder):
    result = decoder.decode("data:application/octet-stream;name=report;base64,SGVsbG8=")

    assert result.stored_name == "report"
    assert result.extension == ".zip"
    assert (decoder.sources_dir / "report.zip").read_bytes() == b"Hello"


def test_decode_trailing_dot_falls_back_to_zip(decoder):
    result = decoder.decode("name=report.;base64,SGVsbG8=")
    assert (result.stored_name, result.extension) == ("report", ".zip")


def test_decode_ignores_whitespace_in_payload(decoder):
    payload = base64.b64encode(b"x" * 120).decode()
    wrapped = "\n".join(payload[i:i + 40] for i in range(0, len(payload), 40))

    decoder.decode(f"data:application/zip;name=site.zip;base64,{wrapped}")

    assert (decoder.sources_dir / "site.zip").read_bytes() == b"x" * 120


@pytest.mark.parametrize("raw", [None, "", "https://example.com/sources/site.zip", "http://www.example.org/a.zip"])
def test_empty_and_urls_pass_through(decoder, raw):
    assert decoder.decode(raw) is None
    assert _files(decoder) == []


def test_prepare_args_leaves_urls_alone(decoder):
    args = {"qType": "build", "source": "https://example.com/site.zip"}
    assert decoder.prepare_args(args) == (args, None)


def test_prepare_args_references_source_without_writing(decoder):
    args = {"qType": "build", "source": "data:;name=site.tar.gz;base64,SGVsbG8=", "other": 1}

    rewritten, source = decoder.prepare_args(args)

    assert rewritten == {"qType": "build", "source": "site.tar", "sourceExt": ".gz", "other": 1}
    assert args["source"].startswith("data:")
    assert _files(decoder) == []

    decoder.write(source)

    assert (decoder.sources_dir / "site.tar.gz").read_bytes() == b"Hello"


@pytest.mark.parametrize(
    "raw, message",
    [
        ("data:application/zip;name=site.zip;base64", "comma not found"),
        ("data:application/zip;base64,SGVsbG8=", "name= field absent"),
        ("data:application/zip;name=;base64,SGVsbG8=", "name= field is empty"),
        ("data:application/zip;name=site.zip;base64,***not-base64***", "invalid base64"),
    ],
)
def test_malformed_attachments_raise_decode_error(decoder, raw, message):
    with pytest.raises(DecodeError, match=message) as info:
        decoder.decode(raw)

    assert info.value.raw == raw
    assert _files(decoder) == []


@pytest.mark.parametrize("name", ["../../etc/passwd", "..", "nested/file.txt", "..\\evil.zip"])
def test_path_traversal_is_rejected(decoder, tmp_path, name):
    with pytest.raises(PathTraversalError):
        decoder.decode(f"data:;name={name};base64,SGVsbG8=")

    assert _files(decoder) == []
    assert not (tmp_path / "etc").exists()


def test_decoder_writes_relative_to_injected_root(tmp_path):
    root = tmp_path / "elsewhere"
    root.mkdir()

    PayloadDecoder(root).decode("name=a.txt;base64,SGVsbG8=")

    assert (root / "a.txt").read_bytes() == b"Hello"
