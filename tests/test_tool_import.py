"""
Tests for core/tool_import.py - JSON tool descriptor files.
"""

import json
import shutil
import tempfile
import unittest
from pathlib import Path

from agentworker.core.tool_import import (
    definition_from_dict,
    load_tool_descriptors,
    parse_tool_descriptors,
    resolve_descriptor_path,
)
from agentworker.errors import InvalidArgumentError, NotFoundError

WEATHER = {
    "name": "get_weather",
    "description": "Weather lookup",
    "parameters": {"type": "object", "properties": {"city": {"type": "string"}}},
    "mock": {"temp": 21},
}


class TestToolImport(unittest.TestCase):
    """Test cases for descriptor parsing and path validation."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.tools_dir = Path(self.temp_dir) / "tools"
        self.tools_dir.mkdir()

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write(self, name: str, data) -> Path:
        path = self.tools_dir / name
        path.write_text(json.dumps(data))
        return path

    def test_parse_tools_key(self):
        result = parse_tool_descriptors({"tools": [WEATHER]})
        self.assertEqual(result.imported, ["get_weather"])
        self.assertEqual(result.tools[0].execute({}), {"temp": 21})

    def test_parse_plain_list(self):
        result = parse_tool_descriptors([dict(WEATHER, needs_approval=True)])
        self.assertTrue(result.tools[0].needs_approval)

    def test_invalid_entries_are_skipped(self):
        result = parse_tool_descriptors(
            [WEATHER, {"name": "broken", "description": "no parameters"}, {"description": "x"}, "junk"]
        )
        self.assertEqual(result.imported, ["get_weather"])
        self.assertEqual(result.skipped, ["broken", "(unnamed)", "(unnamed)"])

    def test_no_tools_raises(self):
        with self.assertRaises(InvalidArgumentError):
            parse_tool_descriptors({"other": []})

    def test_definition_from_dict_requires_fields(self):
        with self.assertRaises(InvalidArgumentError):
            definition_from_dict({"name": "x"})
        self.assertEqual(definition_from_dict(WEATHER).name, "get_weather")

    def test_load_relative_path(self):
        self._write("weather.json", {"tools": [WEATHER]})
        result = load_tool_descriptors("weather.json", self.tools_dir)
        self.assertEqual(result.imported, ["get_weather"])

    def test_path_outside_tools_dir_rejected(self):
        outside = Path(self.temp_dir) / "outside.json"
        outside.write_text("[]")
        with self.assertRaises(InvalidArgumentError):
            resolve_descriptor_path("../outside.json", self.tools_dir)
        with self.assertRaises(InvalidArgumentError):
            resolve_descriptor_path(str(outside), self.tools_dir)

    def test_wrong_suffix_rejected(self):
        self._write("tools.txt", [])
        with self.assertRaises(InvalidArgumentError):
            resolve_descriptor_path("tools.txt", self.tools_dir)

    def test_missing_file(self):
        with self.assertRaises(NotFoundError):
            load_tool_descriptors("missing.json", self.tools_dir)

    def test_invalid_json(self):
        (self.tools_dir / "bad.json").write_text("{not json")
        with self.assertRaises(InvalidArgumentError):
            load_tool_descriptors("bad.json", self.tools_dir)


if __name__ == "__main__":
    unittest.main()
