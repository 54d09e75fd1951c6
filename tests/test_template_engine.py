"""Tests for the template rendering engine."""
from __future__ import annotations

from pathlib import Path

import pytest
from jinja2 import UndefinedError

from cvmid.templates import TemplateEngine

TEMPLATE = "nginx/identity.conf.j2"


def _context(**changes: object) -> dict[str, object]:
    context: dict[str, object] = {
        "generated_at": "Mon Jan 01 00:00:00 UTC 2024",
        "header_format": "Zone | IP | Instance-ID",
        "header_name": "X-CVM-Info",
        "header_value": "ap-singapore-1 | 10.0.0.100 | ins-abc123",
        "listen_port": 80,
        "server_name": "_",
    }
    context.update(changes)
    return context


def test_render_to_string_uses_builtin_templates() -> None:
    """The built-in server block publishes the header on every route."""
    engine = TemplateEngine.with_overrides(None)

    output = engine.render_to_string(TEMPLATE, _context())

    header = 'add_header X-CVM-Info "ap-singapore-1 | 10.0.0.100 | ins-abc123" always;'
    assert output.count(header) == 3
    assert "listen 80;" in output
    assert "server_name _;" in output
    assert 'return 200 "CVM: ap-singapore-1 | 10.0.0.100 | ins-abc123\\n";' in output
    assert "location /health {" in output
    assert 'return 200 "OK";' in output
    assert "# Generated on: Mon Jan 01 00:00:00 UTC 2024" in output


def test_render_is_strict_about_missing_variables() -> None:
    """Missing context keys raise instead of rendering blanks."""
    engine = TemplateEngine.with_overrides(None)
    context = _context()
    del context["header_value"]

    with pytest.raises(UndefinedError):
        engine.render_to_string(TEMPLATE, context)


def test_render_to_path_writes_with_mode(tmp_path: Path) -> None:
    """Rendering to a file writes content and respects the requested mode."""
    engine = TemplateEngine.with_overrides(None)
    destination = tmp_path / "conf.d" / "auto-instance.conf"

    changed = engine.render_to_path(TEMPLATE, destination, _context(), mode=0o600)

    assert changed is True
    assert destination.exists()
    assert oct(destination.stat().st_mode & 0o777) == "0o600"

    # Second render with same content should be a no-op.
    changed_again = engine.render_to_path(TEMPLATE, destination, _context(), mode=0o644)
    assert changed_again is False
    assert oct(destination.stat().st_mode & 0o777) == "0o644"

    changed_value = engine.render_to_path(
        TEMPLATE,
        destination,
        _context(header_value="unknown-zone | unknown-ip | unknown-instance"),
        mode=0o644,
    )
    assert changed_value is True
    assert "unknown-zone | unknown-ip | unknown-instance" in destination.read_text()
    assert [p.name for p in destination.parent.iterdir()] == ["auto-instance.conf"]


def test_override_directory_takes_precedence(tmp_path: Path) -> None:
    """Templates in the override directory shadow the built-ins."""
    override_dir = tmp_path / "templates"
    (override_dir / "nginx").mkdir(parents=True)
    (override_dir / "nginx" / "identity.conf.j2").write_text(
        "# custom\nadd_header {{ header_name }} \"{{ header_value }}\";\n"
    )

    engine = TemplateEngine.with_overrides(override_dir)
    output = engine.render_to_string(TEMPLATE, _context())

    assert output.startswith("# custom")
    assert 'add_header X-CVM-Info "ap-singapore-1 | 10.0.0.100 | ins-abc123";' in output


def test_missing_override_directory_falls_back_to_builtins(tmp_path: Path) -> None:
    """A non-existent override directory is ignored."""
    engine = TemplateEngine.with_overrides(tmp_path / "absent")

    output = engine.render_to_string(TEMPLATE, _context())

    assert "location /health" in output
