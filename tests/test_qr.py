"""
Tests for QR decoding of image attachments.
"""

from unittest.mock import Mock

import cv2
import numpy as np
import pytest

from autoredeem import QRScanner, decode_qr, is_image_attachment

LINK = "https://gift.truemoney.com/campaign/?v=QRcode123"


def qr_png(data: str) -> bytes:
    """Render data as a QR code PNG large enough to detect reliably"""
    modules = cv2.QRCodeEncoder.create().encode(data)
    img = cv2.resize(modules, None, fx=8, fy=8, interpolation=cv2.INTER_NEAREST)
    img = cv2.copyMakeBorder(img, 40, 40, 40, 40, cv2.BORDER_CONSTANT, value=255)
    ok, encoded = cv2.imencode(".png", img)
    assert ok
    return encoded.tobytes()


def blank_png() -> bytes:
    ok, encoded = cv2.imencode(".png", np.full((200, 200, 3), 255, np.uint8))
    assert ok
    return encoded.tobytes()


class TestDecodeQr:
    def test_decodes_voucher_link(self):
        assert decode_qr(qr_png(LINK)) == LINK

    def test_image_without_qr(self):
        assert decode_qr(blank_png()) is None

    def test_unreadable_bytes(self):
        with pytest.raises(ValueError):
            decode_qr(b"definitely not an image")


class TestAttachments:
    @pytest.mark.parametrize("attachment,expected", [
        ({"content_type": "image/png"}, True),
        ({"content_type": "image/jpeg", "filename": "x"}, True),
        ({"filename": "Voucher.JPG"}, True),
        ({"content_type": None, "filename": "qr.webp"}, True),
        ({"content_type": "text/plain", "filename": "notes.txt"}, False),
        ({}, False),
    ])
    def test_is_image_attachment(self, attachment, expected):
        assert is_image_attachment(attachment) is expected

    @pytest.mark.asyncio
    async def test_scanner_downloads_and_decodes(self):
        session = Mock()
        session.get.return_value = Mock(content=qr_png(LINK))
        scanner = QRScanner(timeout=3, session=session)

        payload = await scanner.scan({"url": "https://cdn.test/qr.png"})

        assert payload == LINK
        session.get.assert_called_once_with("https://cdn.test/qr.png", timeout=3)

    @pytest.mark.asyncio
    async def test_scanner_without_url(self):
        session = Mock()
        scanner = QRScanner(session=session)

        assert await scanner.scan({"filename": "qr.png"}) is None
        session.get.assert_not_called()
