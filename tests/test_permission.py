import pytest

from bellows.permission import (
    ALLOW,
    ASK,
    DENY,
    PermissionRequest,
    evaluate,
    is_disabled,
    resolve,
)


def _request(permission="bash", patterns=("git status",)):
    return PermissionRequest(
        session_id="ses_1",
        message_id="msg_1",
        call_id="call_1",
        permission=permission,
        patterns=tuple(patterns),
    )


class TestEvaluate:
    def test_default_is_ask(self):
        assert evaluate({}, "bash") == ASK

    def test_last_match_wins(self):
        rules = {"*": "allow", "bash": "ask", "bash:git *": "allow"}
        assert evaluate(rules, "read") == ALLOW
        assert evaluate(rules, "bash", "rm -rf /") == ASK
        assert evaluate(rules, "bash", "git status") == ALLOW

    def test_pattern_rules_need_a_target(self):
        rules = {"bash:git *": "deny"}
        assert evaluate(rules, "bash") == ASK

    def test_unknown_action(self):
        with pytest.raises(ValueError):
            evaluate({"*": "maybe"}, "bash")

    def test_is_disabled(self):
        assert is_disabled({"*": "allow", "edit": "deny"}, "edit")
        assert not is_disabled({"*": "allow", "edit:*.md": "deny"}, "edit")


class TestResolve:
    def test_allow_skips_approver(self):
        def ask(request):
            raise AssertionError("approver should not be consulted")

        assert resolve({"*": ALLOW}, _request(), ask)

    def test_deny(self):
        assert not resolve({"bash": DENY}, _request(), lambda request: True)

    def test_ask_delegates(self):
        seen = []
        assert resolve({"bash": ASK}, _request(), lambda request: seen.append(request) or True)
        assert seen[0].patterns == ("git status",)
        assert not resolve({"bash": ASK}, _request(), lambda request: False)

    def test_ask_without_approver_is_denied(self):
        assert not resolve({"bash": ASK}, _request(), None)

    def test_every_pattern_must_pass(self):
        rules = {"bash": "deny", "bash:git *": "allow"}
        assert resolve(rules, _request(patterns=["git log"]), None)
        assert not resolve(rules, _request(patterns=["git log", "curl x"]), None)
