"""Tests for identifier extraction and restorable stub compression."""

from __future__ import annotations

import pytest

from ctxguard.config import RestorableConfig
from ctxguard.core.memory.identifiers import (
    extract_file_paths,
    extract_identifiers,
    extract_tool_call_ids,
    extract_urls,
    is_tool_call_id,
    strip_line_range,
)
from ctxguard.core.memory.restorable import RestorableCompressor
from ctxguard.core.types import Role, Turn


def long_message(prefix: str, length: int = 500) -> Turn:
    return Turn(role=Role.TOOL, content=prefix + " " + "a" * (length - len(prefix) - 1))


# =============================================================
# Identifier matchers
# =============================================================

class TestIdentifiers:
    def test_file_paths(self):
        text = "Read src/utils/logger.ts and lib/script.py and src/app.js for details"
        assert extract_file_paths(text) == ["src/utils/logger.ts", "lib/script.py", "src/app.js"]

    def test_file_path_with_line_range(self):
        assert extract_file_paths("Check src/agent/executor.ts:42-100 for the bug") == [
            "src/agent/executor.ts:42-100",
        ]
        assert extract_file_paths("see main.py:7") == ["main.py:7"]

    def test_file_paths_inside_urls_are_ignored(self):
        assert extract_file_paths("https://example.com/static/main.py") == []

    def test_urls(self):
        text = "See https://example.com/docs/api and http://localhost:3000/health for info."
        assert extract_urls(text) == ["https://example.com/docs/api", "http://localhost:3000/health"]

    def test_url_trailing_punctuation(self):
        assert extract_urls("Visit https://x.com/y.") == ["https://x.com/y"]

    def test_tool_call_ids(self):
        text = "Results from call_abc123 and also toolu_xyz789 were large"
        assert extract_tool_call_ids(text) == ["call_abc123", "toolu_xyz789"]
        assert is_tool_call_id("call_1") is True
        assert is_tool_call_id("recall_x") is False

    def test_combined_order_and_dedup(self):
        text = "src/a.py then https://x.com/y then call_1 then src/a.py again"
        assert extract_identifiers(text) == ["src/a.py", "https://x.com/y", "call_1"]

    def test_strip_line_range(self):
        assert strip_line_range("src/agent/executor.ts:42-100") == "src/agent/executor.ts"
        assert strip_line_range("main.py:7") == "main.py"
        assert strip_line_range("http://localhost:3000") == "http://localhost:3000"


# =============================================================
# compress()
# =============================================================

class TestStubCompression:
    def test_short_messages_pass_through(self):
        compressor = RestorableCompressor()
        msg = Turn(role=Role.TOOL, content="Read src/app.ts")

        result = compressor.compress([msg])

        assert result.messages == [msg]
        assert result.identifiers == []
        assert result.tokens_saved == 0

    def test_long_message_without_identifiers_unchanged(self):
        compressor = RestorableCompressor()
        msg = Turn(role=Role.TOOL, content="plain words " * 50)

        result = compressor.compress([msg])

        assert result.messages[0].content == msg.content
        assert compressor.list_identifiers() == []

    def test_stub_and_restore(self):
        compressor = RestorableCompressor()
        msg = long_message("Edited src/app.ts after reading https://x.com/y")

        result = compressor.compress([msg])

        stub = result.messages[0].content
        assert stub.startswith("[Content compressed: 500 chars. Identifiers: src/app.ts, https://x.com/y]")
        assert "restore_context" in stub
        assert result.identifiers == ["src/app.ts", "https://x.com/y"]
        assert result.tokens_saved > 0
        assert result.messages[0].role == Role.TOOL

        restored = compressor.restore("src/app.ts")
        assert restored.found is True
        assert restored.content == msg.content
        assert compressor.restore("https://x.com/y").content == msg.content

    def test_stub_lists_at_most_five_identifiers(self):
        compressor = RestorableCompressor()
        files = " ".join(f"file{i}.ts" for i in range(8))

        result = compressor.compress([long_message(files)])

        stub = result.messages[0].content
        assert "file4.ts (+3 more)" in stub
        assert "file5.ts" not in stub
        assert compressor.restore("file7.ts").found is True

    def test_identifiers_deduplicated_across_messages(self):
        compressor = RestorableCompressor()
        first = long_message("Opened src/shared.ts")
        second = long_message("Patched src/shared.ts again")

        result = compressor.compress([first, second])

        assert result.identifiers == ["src/shared.ts"]
        assert compressor.restore("src/shared.ts").content == second.content

    def test_line_range_identifiers(self):
        compressor = RestorableCompressor()
        msg = long_message("Lines from src/main.ts:10-20 shown")

        compressor.compress([msg])

        assert compressor.restore("src/main.ts:10-20").content == msg.content
        assert compressor.restore("src/main.ts").content == msg.content

    def test_input_messages_not_mutated(self):
        compressor = RestorableCompressor()
        msg = long_message("Edited src/app.ts")
        original = msg.content

        compressor.compress([msg])

        assert msg.content == original


# =============================================================
# restore()
# =============================================================

class TestRestore:
    def test_tool_result_restored_from_disk(self, tmp_path):
        writer = RestorableCompressor()
        content = "full tool output " * 100
        writer.write_tool_result("call_abc123", content, tmp_path)

        reader = RestorableCompressor(work_dir=tmp_path)
        result = reader.restore("call_abc123")

        assert result.found is True
        assert result.content == content

    def test_tool_result_restored_after_clear(self, tmp_path):
        compressor = RestorableCompressor()
        compressor.write_tool_result("toolu_1", "output", tmp_path)
        compressor.clear()

        assert compressor.restore("toolu_1").content == "output"

    def test_file_read_from_disk(self, tmp_path):
        (tmp_path / "src").mkdir()
        (tmp_path / "src" / "test-file.ts").write_text("export const x = 1;\n", encoding="utf-8")
        compressor = RestorableCompressor(work_dir=tmp_path)

        result = compressor.restore("src/test-file.ts:1-1")

        assert result.found is True
        assert result.content == "export const x = 1;\n"

    def test_url_gives_refetch_hint(self):
        result = RestorableCompressor().restore("https://example.com/docs")
        assert result.found is False
        assert "web_fetch" in result.content

    def test_unknown_identifier(self, tmp_path):
        result = RestorableCompressor(work_dir=tmp_path).restore("nonexistent/file.xyz")
        assert result.found is False
        assert "not found" in result.content.lower()

    def test_unknown_tool_call_id(self, tmp_path):
        result = RestorableCompressor(work_dir=tmp_path).restore("call_missing")
        assert result.found is False
        assert "call_missing" in result.content


# =============================================================
# Tool-result sidecars and eviction
# =============================================================

class TestStore:
    def test_write_tool_result(self, tmp_path):
        compressor = RestorableCompressor()

        compressor.write_tool_result("call_1", "hello", tmp_path)

        path = tmp_path / ".codebuddy" / "tool-results" / "call_1.txt"
        assert path.read_text(encoding="utf-8") == "hello"
        assert "call_1" in compressor.list_identifiers()

    def test_write_failure_does_not_raise(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory", encoding="utf-8")
        compressor = RestorableCompressor()

        compressor.write_tool_result("call_1", "hello", blocker)

        assert compressor.restore("call_1").content == "hello"

    def test_entry_ceiling(self, tmp_path):
        compressor = RestorableCompressor()
        for i in range(501):
            compressor.put(f"key-{i}", "v")

        compressor.write_tool_result("call_new", "output", tmp_path)

        identifiers = compressor.list_identifiers()
        assert len(identifiers) == 500
        assert "key-0" not in identifiers
        assert identifiers[-1] == "call_new"

    def test_byte_ceiling_applied_on_compress(self):
        compressor = RestorableCompressor(RestorableConfig(max_bytes=600))
        compressor.compress([long_message("Edited src/a.ts"), long_message("Edited src/b.ts")])

        assert compressor.store_size() <= 600
        assert compressor.list_identifiers() == ["src/b.ts"]

    def test_evict_to_bound(self):
        compressor = RestorableCompressor()
        for i in range(10):
            compressor.put(f"k{i}", "x" * 50)
        assert compressor.store_size() == 500

        removed = compressor.evict(200)

        assert removed == 6
        assert compressor.store_size() <= 200
        assert compressor.list_identifiers() == ["k6", "k7", "k8", "k9"]

    def test_evict_oldest_first(self):
        compressor = RestorableCompressor()
        compressor.put("first", "aaa")
        compressor.put("second", "aaa")
        compressor.put("third", "aaa")

        compressor.evict(6)

        assert compressor.list_identifiers() == ["second", "third"]

    def test_evict_empty_store(self):
        assert RestorableCompressor().evict(0) == 0

    def test_store_size_counts_utf8_bytes(self):
        compressor = RestorableCompressor()
        compressor.put("x", "hello")
        compressor.put("y", "world!")
        assert compressor.store_size() == 11

        compressor.put("z", "é")
        assert compressor.store_size() == 13

        compressor.put("x", "hi")
        assert compressor.store_size() == 10


# =============================================================
# Repeated compression, ceilings and unusual identifiers
# =============================================================

class TestRecoverability:
    def test_restore_after_compressing_twice(self):
        compressor = RestorableCompressor()
        msg = long_message(
            "Reviewed packages/server/src/handlers/authentication.ts and "
            "packages/server/src/handlers/authorization.ts for the token refresh bug",
            length=404,
        )

        first = compressor.compress([msg])
        second = compressor.compress(first.messages)

        assert second.messages[0].content == first.messages[0].content
        assert second.identifiers == []
        assert second.tokens_saved == 0
        for path in first.identifiers:
            restored = compressor.restore(path)
            assert restored.found is True
            assert restored.content == msg.content

    def test_long_stub_is_not_restubbed(self):
        compressor = RestorableCompressor(RestorableConfig(min_length=50, max_stub_identifiers=10))
        files = " ".join(f"src/module_{i}/handler.py" for i in range(10))
        msg = long_message(files, length=600)

        stub = compressor.compress([msg]).messages[0]
        assert len(stub.content) > 50
        assert stub.metadata["stubbed"] is True

        again = compressor.compress([stub])

        assert again.messages[0] is stub
        assert compressor.restore("src/module_3/handler.py").content == msg.content

    def test_stub_text_never_replaces_stored_original(self):
        compressor = RestorableCompressor()
        msg = long_message("Edited src/app.ts")
        stub = compressor.compress([msg]).messages[0]

        pasted = Turn(role=Role.USER, content=stub.content)
        compressor.compress([pasted])

        assert compressor.restore("src/app.ts").content == msg.content

    def test_byte_ceiling_on_write(self, tmp_path):
        compressor = RestorableCompressor(RestorableConfig(max_bytes=100))
        for i in range(3):
            compressor.write_tool_result(f"call_{i}", "r" * 60, tmp_path)

        assert compressor.store_size() <= 100
        assert compressor.list_identifiers() == ["call_2"]
        # Evicted entries are still recoverable from their sidecar files
        assert compressor.restore("call_0").content == "r" * 60

    def test_byte_ceiling_on_put(self):
        compressor = RestorableCompressor(RestorableConfig(max_bytes=100))
        for i in range(3):
            compressor.put(f"src/file{i}.py", "p" * 60)

        assert compressor.store_size() <= 100
        assert compressor.list_identifiers() == ["src/file2.py"]

    @pytest.mark.parametrize("identifier", [
        "~nosuchuser_zz/app.py",
        "~nosuchuser_zz",
        "bad\x00name.py",
        "",
        "   ",
        "call_",
        "../../../../etc/does-not-exist.py",
    ])
    def test_restore_never_raises(self, tmp_path, identifier):
        result = RestorableCompressor(work_dir=tmp_path).restore(identifier)
        assert result.found is False
        assert result.content
