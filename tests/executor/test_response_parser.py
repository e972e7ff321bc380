"""Tests for turning generator responses into file sets."""

import json

import pytest

from autoforge.exceptions import GenerationError
from autoforge.executor.response_parser import parse_generated_files


class TestMappingResponses:
    def test_plain_mapping(self):
        assert parse_generated_files({"a.py": "1\n", "b/c.py": "2\n"}) == {"a.py": "1\n", "b/c.py": "2\n"}

    def test_files_list(self):
        response = {"files": [{"path": "a.py", "content": "1"}, {"path": "", "content": "skip"}, "junk"]}
        assert parse_generated_files(response) == {"a.py": "1"}

    def test_files_mapping(self):
        assert parse_generated_files({"files": {"a.py": "1"}}) == {"a.py": "1"}

    def test_non_string_content_rejected(self):
        with pytest.raises(GenerationError):
            parse_generated_files({"a.py": 5})

    def test_bad_files_value_rejected(self):
        with pytest.raises(GenerationError):
            parse_generated_files({"files": "a.py"})

    def test_unsupported_type_rejected(self):
        with pytest.raises(GenerationError):
            parse_generated_files(42)

    def test_none_is_empty(self):
        assert parse_generated_files(None) == {}


class TestTextResponses:
    def test_json_document(self):
        text = json.dumps({"files": [{"path": "app.py", "content": "print(1)\n"}]})
        assert parse_generated_files(text) == {"app.py": "print(1)\n"}

    def test_empty_json_files_stays_empty(self):
        assert parse_generated_files('{"files": []}') == {}

    def test_fenced_blocks_with_paths(self):
        text = (
            "Here you go:\n"
            "```python src/app.py\nprint('app')\n```\n"
            "```python:tests/test_app.py\ndef test(): pass\n```\n"
        )
        assert parse_generated_files(text) == {
            "src/app.py": "print('app')\n",
            "tests/test_app.py": "def test(): pass\n",
        }

    def test_path_as_fence_tag(self):
        assert parse_generated_files("```config/settings.yaml\nkey: 1\n```") == {"config/settings.yaml": "key: 1\n"}

    def test_unnamed_blocks(self):
        text = "```python\nprint(1)\n```\n```bash\necho hi\n```"
        assert parse_generated_files(text, primary_file="run.py") == {
            "run.py": "print(1)\n",
            "generated_file_1.sh": "echo hi\n",
        }

    def test_plain_text_goes_to_primary_file(self):
        assert parse_generated_files("print('hello')", primary_file="hello.py") == {"hello.py": "print('hello')\n"}

    def test_default_primary_file(self):
        assert parse_generated_files("x = 1") == {"main.py": "x = 1\n"}

    def test_blank_text_is_empty(self):
        assert parse_generated_files("   \n") == {}
