"""
Tests for payload sniffing (data URL parsing and magic bytes).
"""

import base64

import pytest

from local_ocr.sniffer import detect_mime_from_magic, sniff_payload, split_data_url

PNG_HEAD = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16
PDF_HEAD = b"%PDF-1.7\n%\xe2\xe3\xcf\xd3\n1 0 obj\n"


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


class TestSplitDataUrl:
    def test_data_url_header(self):
        bare, declared = split_data_url("data:Application/PDF;base64,QUJD")
        assert bare == "QUJD"
        assert declared == "application/pdf"

    def test_bare_payload_uses_hint(self):
        bare, declared = split_data_url("QUJD", "Image/PNG")
        assert bare == "QUJD"
        assert declared == "image/png"

    def test_bare_payload_without_hint(self):
        assert split_data_url("QUJD") == ("QUJD", "")


class TestDetectMimeFromMagic:
    @pytest.mark.parametrize(
        "head, expected",
        [
            (PNG_HEAD, "image/png"),
            (b"\xff\xd8\xff\xe0" + b"\x00" * 12, "image/jpeg"),
            (b"GIF89a" + b"\x00" * 10, "image/gif"),
            (b"GIF87a" + b"\x00" * 10, "image/gif"),
            (b"RIFF\x10\x00\x00\x00WEBPVP8 ", "image/webp"),
            (b"BM" + b"\x00" * 14, "image/bmp"),
            (b"II*\x00" + b"\x00" * 12, "image/tiff"),
            (b"MM\x00*" + b"\x00" * 12, "image/tiff"),
            (PDF_HEAD, "application/pdf"),
        ],
    )
    def test_signatures(self, head, expected):
        assert detect_mime_from_magic(head) == expected

    def test_short_buffer_has_no_signature(self):
        assert detect_mime_from_magic(b"\xff\xd8\xff\xe0") is None

    def test_short_pdf_still_detected(self):
        assert detect_mime_from_magic(b"%PDF-1") == "application/pdf"

    def test_riff_without_webp(self):
        assert detect_mime_from_magic(b"RIFF\x10\x00\x00\x00WAVEfmt ") is None

    def test_plain_text(self):
        assert detect_mime_from_magic(b"hello world, plain text") is None


class TestSniffPayload:
    def test_png_bare(self):
        result = sniff_payload(_b64(PNG_HEAD))
        assert result.kind == "image"
        assert result.effective_mime == "image/png"
        assert result.is_image

    def test_magic_beats_declared_mime(self):
        result = sniff_payload("data:image/png;base64," + _b64(PDF_HEAD))
        assert result.kind == "pdf"
        assert result.declared_mime == "image/png"
        assert result.magic_mime == "application/pdf"
        assert result.effective_mime == "application/pdf"
        assert result.payload == _b64(PDF_HEAD)

    def test_magic_beats_hint(self):
        result = sniff_payload(_b64(PNG_HEAD), mime_hint="application/pdf")
        assert result.kind == "image"

    def test_declared_mime_used_without_magic(self):
        result = sniff_payload(_b64(b"\xff\xd8\xff\xe0"), mime_hint="image/jpeg")
        assert result.magic_mime is None
        assert result.kind == "image"
        assert result.effective_mime == "image/jpeg"

    def test_unknown_without_magic_or_hint(self):
        result = sniff_payload(_b64(b"hello world, plain text"))
        assert result.kind == "unknown"
        assert result.effective_mime == ""

    def test_whitespace_in_payload(self):
        encoded = _b64(PDF_HEAD)
        wrapped = "\n".join(encoded[i:i + 8] for i in range(0, len(encoded), 8))
        assert sniff_payload(wrapped).kind == "pdf"

    def test_large_payload_only_head_decoded(self):
        payload = _b64(PNG_HEAD + b"\x00" * 400_000) + "!!!not base64!!!"
        assert sniff_payload(payload).kind == "image"

    @pytest.mark.parametrize("payload", ["", "@@@@", "data:image/png;base64,", None])
    def test_invalid_never_raises(self, payload):
        result = sniff_payload(payload, mime_hint="image/png")
        assert result.kind == "invalid"
        assert result.effective_mime == "image/png"
