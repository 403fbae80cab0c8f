import unittest
from unittest import mock

import requests

from weekplan.ai_client import OpenAICompatibleClient, _extract_json_payload
from weekplan.models import AIConfig


def _response(content: str) -> mock.Mock:
    response = mock.Mock()
    response.ok = True
    response.raise_for_status.return_value = None
    response.json.return_value = {"choices": [{"message": {"content": content}}]}
    return response


class ExtractJsonTests(unittest.TestCase):
    def test_fenced_block(self) -> None:
        text = "Here you go:\n```json\n{\"update_type\": \"none\"}\n```"
        self.assertEqual(_extract_json_payload(text), '{"update_type": "none"}')

    def test_no_json_raises(self) -> None:
        with self.assertRaises(ValueError):
            _extract_json_payload("no structured output")


class OpenAICompatibleClientTests(unittest.TestCase):
    def setUp(self) -> None:
        self.config = AIConfig(base_url="https://api.example.com/v1/", api_key="k", model="planner-model")

    def test_unconfigured_client_proposes_nothing(self) -> None:
        client = OpenAICompatibleClient(AIConfig(api_key=""))
        with mock.patch("weekplan.ai_client.requests.post") as post:
            self.assertEqual(client.generate_proposal(messages=[]), {"update_type": "none"})
        post.assert_not_called()

    def test_generate_proposal_parses_content(self) -> None:
        content = '{"update_type": "partial", "changes": [{"action": "remove", "day": "Mon", "match_title": "gym"}]}'
        with mock.patch("weekplan.ai_client.requests.post", return_value=_response(content)) as post:
            result = OpenAICompatibleClient(self.config).generate_proposal(messages=[{"role": "user", "content": "hi"}])
        self.assertEqual(result["update_type"], "partial")
        self.assertEqual(post.call_args.args[0], "https://api.example.com/v1/chat/completions")
        self.assertEqual(post.call_args.kwargs["json"]["model"], "planner-model")

    def test_missing_update_type_defaults_to_none(self) -> None:
        with mock.patch("weekplan.ai_client.requests.post", return_value=_response('{"notes": "ok"}')):
            result = OpenAICompatibleClient(self.config).generate_proposal(messages=[])
        self.assertEqual(result["update_type"], "none")

    def test_connectivity_reports_transport_errors(self) -> None:
        with mock.patch("weekplan.ai_client.requests.post", side_effect=requests.ConnectionError("refused")):
            ok, message = OpenAICompatibleClient(self.config).test_connectivity()
        self.assertFalse(ok)
        self.assertIn("ConnectionError", message)


if __name__ == "__main__":
    unittest.main()
