import io
import json
import unittest
from urllib.error import HTTPError, URLError

from ollama_api import GIB, OllamaClient, format_size, parse_models, parse_running, size_color
from tui_base import ExternalCommandError, ServiceNotRespondingError


class FakeHTTP:
    """Records requests and answers with canned bodies keyed by path."""

    def __init__(self, responses=None, error=None):
        self.responses = responses or {}
        self.error = error
        self.requests = []

    def __call__(self, request, timeout=None):
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        path = request.full_url.split("11434", 1)[1]
        return io.BytesIO(self.responses.get(path, b""))


TAGS = {
    "models": [
        {"name": "qwen2:7b", "size": 4 * GIB, "modified_at": "2024-07-02T08:00:00.1+02:00", "digest": "abc"},
        {"name": "llama3:70b", "size": 40 * GIB, "modified_at": "2024-06-01T10:00:00Z"},
        {"name": "", "size": 1},
    ]
}


class ParsingTests(unittest.TestCase):
    def test_models_sorted_and_dated(self):
        models = parse_models(TAGS)
        self.assertEqual([m.name for m in models], ["llama3:70b", "qwen2:7b"])
        self.assertEqual(models[1].modified, "2024-07-02")
        self.assertAlmostEqual(models[0].size_gb, 40.0)

    def test_running_processor(self):
        running = parse_running({"models": [{"name": "a", "size": 10, "size_vram": 0, "context_length": 2048}]})
        self.assertEqual(running[0].processor, "CPU")
        self.assertEqual(running[0].context_length, 2048)

    def test_size_formatting_and_colour_bands(self):
        self.assertEqual(format_size(int(4.5 * GIB)), "4.50 GB")
        self.assertEqual(size_color(int(2.9 * GIB)), "green")
        self.assertEqual(size_color(3 * GIB), "blue")
        self.assertEqual(size_color(6 * GIB), "yellow")
        self.assertEqual(size_color(9 * GIB), "red")


class ClientTests(unittest.TestCase):
    def test_list_models(self):
        http = FakeHTTP({"/api/tags": json.dumps(TAGS).encode()})
        client = OllamaClient("http://localhost:11434/", opener=http)
        self.assertEqual(len(client.list_models()), 2)
        self.assertEqual(http.requests[0].get_method(), "GET")

    def test_delete_sends_name(self):
        http = FakeHTTP()
        OllamaClient("http://localhost:11434", opener=http).delete_model("qwen2:7b")
        request = http.requests[0]
        self.assertEqual(request.get_method(), "DELETE")
        self.assertTrue(request.full_url.endswith("/api/delete"))
        self.assertEqual(json.loads(request.data), {"name": "qwen2:7b"})

    def test_http_error_is_command_error(self):
        error = HTTPError("http://localhost:11434/api/delete", 404, "not found", {}, None)
        client = OllamaClient("http://localhost:11434", opener=FakeHTTP(error=error))
        with self.assertRaises(ExternalCommandError) as ctx:
            client.delete_model("missing")
        self.assertIn("404", ctx.exception.message)

    def test_connection_error_is_not_responding(self):
        client = OllamaClient("http://localhost:11434", opener=FakeHTTP(error=URLError("refused")))
        with self.assertRaises(ServiceNotRespondingError):
            client.list_models()

    def test_invalid_json(self):
        client = OllamaClient("http://localhost:11434", opener=FakeHTTP({"/api/tags": b"<html>"}))
        with self.assertRaises(ExternalCommandError):
            client.list_models()

    def test_pull_error_in_body(self):
        http = FakeHTTP({"/api/pull": json.dumps({"error": "pull model manifest: file does not exist"}).encode()})
        with self.assertRaises(ExternalCommandError):
            OllamaClient("http://localhost:11434", opener=http).pull_model("nope")


if __name__ == "__main__":
    unittest.main()
