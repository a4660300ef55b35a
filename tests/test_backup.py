"""Tests for clipkeeper.backup -- JSONL export/import."""
import json
import os

import pytest

from clipkeeper.backup import EXPORT_FORMAT, export_entries, import_entries
from clipkeeper.crypto import reset_crypto_state


def _fill(store):
    store.save(content="first", content_type="text", timestamp=1000, source_app="Notes")
    store.save(content="https://example.com", content_type="url", timestamp=2000,
               metadata={"domain": "example.com"})
    store.save(content="print('hi')", content_type="code", timestamp=3000)


class TestExport:
    def test_plaintext_export(self, store, tmp_clipkeeper_dir):
        _fill(store)
        out = tmp_clipkeeper_dir / "exports" / "history.jsonl"
        result = export_entries(store, out)
        assert result["entry_count"] == 3
        assert result["encrypted"] is False
        lines = out.read_text().splitlines()
        assert json.loads(lines[0])["format"] == EXPORT_FORMAT
        records = [json.loads(line) for line in lines[1:]]
        assert [r["content"] for r in records] == ["first", "https://example.com", "print('hi')"]
        assert records[1]["metadata"] == {"domain": "example.com"}

    def test_export_permissions(self, store, tmp_clipkeeper_dir):
        out = tmp_clipkeeper_dir / "history.jsonl"
        export_entries(store, out)
        assert os.stat(out).st_mode & 0o777 == 0o600

    def test_export_refuses_symlink_target(self, store, tmp_clipkeeper_dir):
        target = tmp_clipkeeper_dir / "real.jsonl"
        target.write_text("")
        link = tmp_clipkeeper_dir / "link.jsonl"
        link.symlink_to(target)
        with pytest.raises(OSError):
            export_entries(store, link)

    def test_encrypted_export(self, store, tmp_clipkeeper_dir, monkeypatch):
        monkeypatch.setenv("CLIPKEEPER_ENCRYPT", "1")
        reset_crypto_state()
        _fill(store)
        out = tmp_clipkeeper_dir / "history.enc.jsonl"
        result = export_entries(store, out)
        assert result["encrypted"] is True
        text = out.read_text()
        assert "example.com" not in text
        assert all(line.startswith("ENC:") for line in text.splitlines())


class TestImport:
    def test_roundtrip_into_fresh_store(self, store, memory_store, tmp_clipkeeper_dir):
        _fill(store)
        out = tmp_clipkeeper_dir / "history.jsonl"
        export_entries(store, out)
        result = import_entries(memory_store, out)
        assert result == {"filepath": str(out), "imported": 3, "skipped": 0}
        originals = {e.content: e for e in store.get_recent()}
        for entry in memory_store.get_recent():
            original = originals[entry.content]
            assert entry.id != original.id
            assert entry.content_type == original.content_type
            assert entry.timestamp == original.timestamp
            assert entry.source_app == original.source_app
            assert entry.metadata == original.metadata

    def test_encrypted_roundtrip(self, store, memory_store, tmp_clipkeeper_dir, monkeypatch):
        monkeypatch.setenv("CLIPKEEPER_ENCRYPT", "1")
        reset_crypto_state()
        _fill(store)
        out = tmp_clipkeeper_dir / "history.enc.jsonl"
        export_entries(store, out)
        assert import_entries(memory_store, out)["imported"] == 3
        assert len(memory_store.search("example")) == 1

    def test_clear_existing(self, store, tmp_clipkeeper_dir):
        _fill(store)
        out = tmp_clipkeeper_dir / "history.jsonl"
        export_entries(store, out)
        store.save(content="local only", content_type="text", timestamp=9)
        import_entries(store, out, clear_existing=True)
        assert store.get_count() == 3
        assert store.search("local") == []

    def test_bad_lines_skipped(self, memory_store, tmp_clipkeeper_dir):
        path = tmp_clipkeeper_dir / "messy.jsonl"
        path.write_text("\n".join([
            json.dumps({"format": EXPORT_FORMAT, "exported_at": "2024-01-01T00:00:00+00:00"}),
            json.dumps({"content": "good", "content_type": "text", "timestamp": 1}),
            "5",
            "null",
            "[\"a list\"]",
            "{truncated",
            json.dumps({"content": "no type"}),
            "",
            "ENC:not-a-real-token",
            json.dumps({"content": "also good", "content_type": "text", "timestamp": 2}),
        ]) + "\n")
        result = import_entries(memory_store, path)
        assert result["imported"] == 2
        assert result["skipped"] == 6
        assert memory_store.get_count() == 2

    def test_symlink_refused(self, store, tmp_clipkeeper_dir):
        target = tmp_clipkeeper_dir / "real.jsonl"
        export_entries(store, target)
        link = tmp_clipkeeper_dir / "link.jsonl"
        link.symlink_to(target)
        with pytest.raises(ValueError, match="symlink"):
            import_entries(store, link)
