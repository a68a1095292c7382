"""Tests for the clipboard-proxy request pipeline."""

from __future__ import annotations

import base64
import os
import time

import pytest

from sandbox_proxy.core.audit import AuditLogger
from sandbox_proxy.core.models import AuditAction, AuditDecision
from sandbox_proxy.proxy.clipboard_proxy import ClipboardProxyService
from sandbox_proxy.sandbox.screenshots import ScreenshotSelector


@pytest.fixture
def clip_audit(tmp_path) -> AuditLogger:
    return AuditLogger(tmp_path / "logs" / "clipboard-proxy.log", "clipboard-proxy")


@pytest.fixture
def service(clip_audit, screenshots_dir) -> ClipboardProxyService:
    return ClipboardProxyService(clip_audit, ScreenshotSelector(screenshots_dir, max_age=120))


# =============================================================================
# read_image Tests
# =============================================================================


class TestReadImage:
    def test_fresh_screenshot_returned(self, service, clip_audit, screenshots_dir):
        payload = b"\x89PNG\r\n\x1a\nimage-bytes"
        (screenshots_dir / "shot.png").write_bytes(payload)

        response = service.handle(b'{"command": "read_image"}\n')
        assert response.exit_code == 0
        assert response.stderr == ""
        assert base64.b64decode(response.stdout_b64) == payload

        (record,) = clip_audit.read()
        assert record.decision == AuditDecision.ALLOWED
        assert record.action == AuditAction.READ_IMAGE
        assert record.exit_code == 0
        assert record.reason.endswith("shot.png")

    def test_stale_screenshot(self, service, clip_audit, screenshots_dir):
        path = screenshots_dir / "old.png"
        path.write_bytes(b"x")
        old = time.time() - 600
        os.utime(path, (old, old))

        response = service.handle(b'{"command": "read_image"}\n')
        assert response.exit_code == 1
        assert response.stdout_b64 == ""
        assert response.stderr.startswith("clipboard-proxy: no screenshot younger than 120s")
        assert next(clip_audit.read()).exit_code == 1

    def test_empty_directory(self, service):
        response = service.handle(b'{"command": "read_image"}\n')
        assert response.exit_code == 1
        assert "no screenshot found" in response.stderr


# =============================================================================
# Invalid Request Tests
# =============================================================================


class TestInvalid:
    def test_unknown_command(self, service, clip_audit):
        response = service.handle(b'{"command": "write_image"}\n')
        assert response.exit_code == 1
        assert response.stderr == "clipboard-proxy: unknown command: write_image\n"
        record = next(clip_audit.read())
        assert record.decision == AuditDecision.DENIED
        assert record.request == "write_image"

    @pytest.mark.parametrize(
        "line", [b"{", b'{"args": ["pr"]}', b'{"command": "read_image", "path": "/"}']
    )
    def test_malformed(self, service, clip_audit, line):
        response = service.handle(line)
        assert response.exit_code == 1
        assert response.stderr.startswith("clipboard-proxy: invalid request: ")
        assert next(clip_audit.read()).action == AuditAction.INVALID


# =============================================================================
# Audit Failure Tests
# =============================================================================


class TestAuditFailure:
    @pytest.fixture
    def unwritable_service(self, tmp_path, screenshots_dir) -> ClipboardProxyService:
        blocker = tmp_path / "blocker"
        blocker.write_text("")
        audit = AuditLogger(blocker / "clipboard-proxy.log", "clipboard-proxy")
        return ClipboardProxyService(audit, ScreenshotSelector(screenshots_dir, max_age=120))

    def test_screenshot_still_served(self, unwritable_service, screenshots_dir):
        (screenshots_dir / "shot.png").write_bytes(b"png")
        response = unwritable_service.handle(b'{"command": "read_image"}\n')
        assert response.exit_code == 0
        assert base64.b64decode(response.stdout_b64) == b"png"

    def test_unknown_command_still_rejected(self, unwritable_service):
        response = unwritable_service.handle(b'{"command": "write_image"}\n')
        assert response.exit_code == 1
        assert response.stderr == "clipboard-proxy: unknown command: write_image\n"
