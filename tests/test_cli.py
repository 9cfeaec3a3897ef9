import io
import unittest
from unittest import mock

from chatsync import cli


class CliTests(unittest.TestCase):
    def test_suggest_prints_matches(self):
        buffer = io.StringIO()

        exit_code = cli.main(["suggest", "al", "Alex", "alice", "Bob"], output=buffer)

        self.assertEqual(exit_code, 0)
        self.assertEqual(buffer.getvalue().splitlines(), ["Alex", "alice"])

    def test_suggest_honours_limit(self):
        buffer = io.StringIO()

        cli.main(["suggest", "a", "a1", "a2", "a3", "--limit", "2"], output=buffer)

        self.assertEqual(buffer.getvalue().splitlines(), ["a1", "a2"])

    def test_serve_runs_relay_app(self):
        with mock.patch.object(cli.web, "run_app") as run_app:
            exit_code = cli.main(["--log-level", "ERROR", "serve", "--port", "9999", "--ping-interval", "5"])

        self.assertEqual(exit_code, 0)
        app = run_app.call_args.args[0]
        self.assertEqual(app["ws_config"]["ping_interval_s"], 5)
        self.assertEqual(run_app.call_args.kwargs, {"host": "127.0.0.1", "port": 9999})

    def test_command_is_required(self):
        with self.assertRaises(SystemExit):
            cli.main([], output=io.StringIO())


if __name__ == "__main__":
    unittest.main()
