import unittest
from pathlib import Path
from unittest.mock import patch

import validators


class NumericValidationTests(unittest.TestCase):
    def test_accepts_digit_strings(self):
        for value in ("0", "8192", "007"):
            result = validators.validate_non_negative_int(value)
            self.assertTrue(result.is_valid, value)
            self.assertEqual(result.value, value)

    def test_rejects_non_digits(self):
        for value in ("abc", "-1", "12ab", " 12", "1.5", ""):
            self.assertFalse(validators.validate_non_negative_int(value).is_valid, value)

    def test_port_range(self):
        self.assertEqual(validators.validate_port("3000").value, 3000)
        self.assertEqual(validators.validate_port(None, default=11434).value, 11434)
        self.assertFalse(validators.validate_port("70000").is_valid)
        self.assertFalse(validators.validate_port("0").is_valid)


class PathValidationTests(unittest.TestCase):
    def test_absolute_path_is_normalised(self):
        result = validators.validate_absolute_path("/srv//models/")
        self.assertEqual(result.value, Path("/srv/models"))

    def test_relative_path_rejected(self):
        result = validators.validate_absolute_path("relative/path", name="--models-dir")
        self.assertFalse(result.is_valid)
        self.assertIn("absolute", result.error)

    def test_home_is_expanded(self):
        with patch.dict(validators.os.environ, {"HOME": "/home/op"}):
            result = validators.validate_absolute_path("~/models")
        self.assertEqual(result.value, Path("/home/op/models"))


class EnvLineTests(unittest.TestCase):
    def test_valid_assignment(self):
        self.assertEqual(validators.validate_env_line("OLLAMA_PORT=11434\n").value, ("OLLAMA_PORT", "11434"))

    def test_blank_and_comment_lines(self):
        for line in ("", "   \n", "# comment"):
            result = validators.validate_env_line(line)
            self.assertTrue(result.is_valid)
            self.assertIsNone(result.value)

    def test_rejected_lines(self):
        cases = {
            "OLLAMA_PORT": "missing '='",
            "OLLAMA_PORT =1": "space before",
            "OLLAMA_PORT= 1": "space after",
            "1PORT=1": "invalid variable name",
            "MY-PORT=1": "invalid variable name",
        }
        for line, expected in cases.items():
            result = validators.validate_env_line(line)
            self.assertFalse(result.is_valid, line)
            self.assertIn(expected, result.error)


if __name__ == "__main__":
    unittest.main()
