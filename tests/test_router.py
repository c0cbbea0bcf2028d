"""
Tests for the LLM router: fallback, cancellation and the real-time deadline.
"""

import threading
import unittest
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

from llm.router import LLMRouter, LLMProvider, TaskType


def anthropic_reply(text="ok", success=True, error=None, error_type=None):
    return SimpleNamespace(
        text=text, success=success, input_tokens=12, output_tokens=3,
        error=error, error_type=error_type
    )


def kobold_reply(text="local ok"):
    return SimpleNamespace(text=text, success=True, tokens_generated=4, error=None, error_type=None)


class RouterTestCase(unittest.TestCase):

    def setUp(self):
        patcher = patch("llm.router.log_api_request")
        self.log_api_request = patcher.start()
        self.addCleanup(patcher.stop)

        self.anthropic = MagicMock()
        self.kobold = MagicMock()
        self.kobold.get_model_name.return_value = "local-model"

    def router(self, fallback=False):
        router = LLMRouter(LLMProvider.ANTHROPIC, fallback_enabled=fallback)
        router._anthropic = self.anthropic
        router._kobold = self.kobold
        return router


class TestComplete(RouterTestCase):

    def test_success_is_logged(self):
        self.anthropic.chat.return_value = anthropic_reply("hello")
        response = self.router().complete([{"role": "user", "content": "hi"}], system_prompt="Be brief")

        self.assertTrue(response.success)
        self.assertEqual(response.text, "hello")
        self.assertEqual(response.tokens_in, 12)
        self.assertEqual(self.log_api_request.call_count, 1)
        self.assertEqual(self.log_api_request.call_args.kwargs["task_type"], "classification")

    def test_failure_without_fallback(self):
        self.anthropic.chat.return_value = anthropic_reply("", False, "Overloaded", "overloaded")
        response = self.router().complete([{"role": "user", "content": "hi"}])

        self.assertFalse(response.success)
        self.assertEqual(response.error_type, "overloaded")
        self.kobold.chat.assert_not_called()

    def test_fallback_to_local_provider(self):
        self.anthropic.chat.return_value = anthropic_reply("", False, "Overloaded", "overloaded")
        self.kobold.chat.return_value = kobold_reply()

        response = self.router(fallback=True).complete([{"role": "user", "content": "hi"}])

        self.assertTrue(response.success)
        self.assertEqual(response.provider, LLMProvider.KOBOLD)
        self.assertEqual(response.text, "local ok")

    def test_generate_wraps_a_single_user_message(self):
        self.anthropic.chat.return_value = anthropic_reply()
        self.router().generate("Summarise this", task_type=TaskType.ANALYSIS)
        messages = self.anthropic.chat.call_args.kwargs["messages"]
        self.assertEqual(messages, [{"role": "user", "content": "Summarise this"}])


class TestBoundedWait(RouterTestCase):

    def test_already_cancelled_makes_no_call(self):
        cancel = threading.Event()
        cancel.set()
        response = self.router().complete([{"role": "user", "content": "hi"}], cancel_event=cancel)

        self.assertEqual(response.error_type, "cancelled")
        self.anthropic.chat.assert_not_called()

    def test_cancel_while_waiting(self):
        cancel = threading.Event()
        release = threading.Event()

        def slow_chat(**kwargs):
            cancel.set()
            release.wait(5)
            return anthropic_reply()

        self.anthropic.chat.side_effect = slow_chat
        response = self.router().complete([{"role": "user", "content": "hi"}], cancel_event=cancel)
        release.set()

        self.assertFalse(response.success)
        self.assertEqual(response.error_type, "cancelled")

    def test_timeout(self):
        release = threading.Event()

        def slow_chat(**kwargs):
            release.wait(5)
            return anthropic_reply()

        self.anthropic.chat.side_effect = slow_chat
        response = self.router().complete([{"role": "user", "content": "hi"}], timeout=0.1)
        release.set()

        self.assertFalse(response.success)
        self.assertEqual(response.error_type, "timeout")

    def test_fast_call_within_deadline(self):
        self.anthropic.chat.return_value = anthropic_reply("quick")
        response = self.router().complete([{"role": "user", "content": "hi"}], timeout=5)
        self.assertEqual(response.text, "quick")


if __name__ == '__main__':
    unittest.main()
