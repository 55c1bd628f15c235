import json
import unittest


class TestClientMessages(unittest.TestCase):
    def test_known_messages_parse_to_their_class(self) -> None:
        from mterm.contracts.v1 import (
            CheckFileModified,
            ClaudeTask,
            ExpertSessionRequest,
            Resize,
            SetProject,
            TerminalInput,
            parse_client_message,
        )

        msg = parse_client_message('{"type":"terminal","data":"ls\\n"}')
        self.assertIsInstance(msg, TerminalInput)
        self.assertEqual(msg.data, "ls\n")

        msg = parse_client_message(json.dumps({"type": "resize", "cols": 120, "rows": 40}))
        self.assertIsInstance(msg, Resize)

        msg = parse_client_message(json.dumps({"type": "setProject", "project": {"name": "demo", "path": "/p/demo"}}))
        self.assertIsInstance(msg, SetProject)
        self.assertEqual(msg.project.path, "/p/demo")

        msg = parse_client_message(
            json.dumps({"type": "checkFileModified", "path": "/a.txt", "lastKnownModified": 12, "lastKnownContent": "x"})
        )
        self.assertIsInstance(msg, CheckFileModified)
        self.assertEqual(msg.last_known_modified, 12)
        self.assertEqual(msg.last_known_content, "x")

        msg = parse_client_message(json.dumps({"type": "claudeTask", "task": {"command": "npm test"}}))
        self.assertIsInstance(msg, ClaudeTask)
        self.assertIsNone(msg.task.cwd)

        msg = parse_client_message(json.dumps({"type": "expertSession", "task": "review", "sessionId": "s1"}))
        self.assertIsInstance(msg, ExpertSessionRequest)
        self.assertEqual(msg.session_id, "s1")

    def test_unknown_type_is_ignored(self) -> None:
        from mterm.contracts.v1 import parse_client_message

        self.assertIsNone(parse_client_message('{"type":"somethingNew","x":1}'))

    def test_malformed_frames_raise_transport_error(self) -> None:
        from mterm.contracts.v1 import TransportError, parse_client_message

        for raw in (
            "not json",
            "[1, 2]",
            '{"data": "no type"}',
            '{"type": "resize", "cols": 0, "rows": 10}',
            '{"type": "terminal"}',
            '{"type": "setProject", "project": {"name": "bad name", "path": "/x"}}',
            '{"type": "claudeTask", "task": {"command": ""}}',
        ):
            with self.assertRaises(TransportError, msg=raw):
                parse_client_message(raw)

    def test_every_client_type_has_a_model(self) -> None:
        from mterm.contracts.v1 import CLIENT_MESSAGE_TYPES, parse_client_message

        samples = {
            "ping": {},
            "terminal": {"data": ""},
            "resize": {"cols": 80, "rows": 24},
            "fileStructure": {},
            "setProject": {"project": {"name": "a", "path": "/a"}},
            "claudeCommand": {"resume": True},
            "expertSession": {"task": "t"},
            "readFile": {"path": "/a"},
            "checkFileModified": {"path": "/a"},
            "claudeTask": {"task": {"command": "ls"}},
            "executeTask": {},
        }
        self.assertEqual(set(samples), set(CLIENT_MESSAGE_TYPES))
        for kind, body in samples.items():
            msg = parse_client_message(json.dumps({"type": kind, **body}))
            self.assertEqual(msg.type, kind)


class TestServerEvents(unittest.TestCase):
    def test_events_encode_with_camel_case(self) -> None:
        from mterm.contracts.v1 import Connected, FileContent, Project, encode

        doc = json.loads(encode(Connected(terminal_id="t1", initial_project=Project(name="demo", path="/p/demo"))))
        self.assertEqual(doc["type"], "connected")
        self.assertEqual(doc["terminalId"], "t1")
        self.assertEqual(doc["initialProject"]["name"], "demo")

        doc = json.loads(encode(FileContent(path="/a", content="x", last_modified=5)))
        self.assertEqual(doc, {"type": "fileContent", "path": "/a", "content": "x", "lastModified": 5})


if __name__ == "__main__":
    unittest.main()
