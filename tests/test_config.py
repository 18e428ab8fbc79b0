import os
import unittest
from unittest.mock import patch

from weather_mcp import config


class TestEnvParsing(unittest.TestCase):
    def test_int_parses_value(self):
        with patch.dict(os.environ, {"PORT": "8080"}):
            self.assertEqual(config._env_int("PORT", 3000), 8080)

    def test_invalid_int_falls_back_to_default(self):
        with patch.dict(os.environ, {"PORT": "not-a-port"}):
            with self.assertLogs("weather-mcp-server", level="WARNING"):
                self.assertEqual(config._env_int("PORT", 3000), 3000)

    def test_blank_int_uses_default(self):
        with patch.dict(os.environ, {"PORT": "  "}):
            self.assertEqual(config._env_int("PORT", 3000), 3000)

    def test_invalid_float_falls_back_to_default(self):
        with patch.dict(os.environ, {"WEATHER_MCP_HTTP_TIMEOUT": "soon"}):
            with self.assertLogs("weather-mcp-server", level="WARNING"):
                self.assertEqual(config._env_float("WEATHER_MCP_HTTP_TIMEOUT", 10.0), 10.0)

    def test_truthy_values(self):
        with patch.dict(os.environ, {"WEATHER_MCP_JSON_RESPONSE": "Yes"}):
            self.assertTrue(config._env_truthy("WEATHER_MCP_JSON_RESPONSE"))
        with patch.dict(os.environ, {"WEATHER_MCP_JSON_RESPONSE": "0"}):
            self.assertFalse(config._env_truthy("WEATHER_MCP_JSON_RESPONSE"))


if __name__ == "__main__":
    unittest.main()
