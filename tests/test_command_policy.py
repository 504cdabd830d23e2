"""Tests for the command allow-list."""

import pytest

from bridge.app.services.command_policy import CommandPolicy, base_command


class TestWildcardMatching:
    """Tests for ``*`` pattern semantics."""

    @pytest.mark.parametrize("command", ["ban", "banlist", "ban-ip", "ban Steve griefing"])
    def test_prefix_wildcard_matches(self, command):
        assert CommandPolicy(["ban*"]).is_allowed(command) is True

    @pytest.mark.parametrize("command", ["unban", "pardon", "ba"])
    def test_prefix_wildcard_is_anchored(self, command):
        assert CommandPolicy(["ban*"]).is_allowed(command) is False

    def test_inner_wildcard(self):
        policy = CommandPolicy(["time*set"])
        assert policy.is_allowed("timeset") is True
        assert policy.is_allowed("time-reset") is True
        assert policy.is_allowed("timesets") is False

    def test_universal_wildcard_overrides_everything(self):
        policy = CommandPolicy(["say", "*"])
        assert policy.is_allowed("stop") is True
        assert policy.is_allowed("anything at all") is True
        assert policy.match("stop") == "*"

    def test_exact_entry_matches_only_itself(self):
        policy = CommandPolicy(["list"])
        assert policy.is_allowed("list") is True
        assert policy.is_allowed("listing") is False

    def test_match_is_case_insensitive(self):
        assert CommandPolicy(["Gamemode"]).is_allowed("GAMEMODE creative Steve") is True

    def test_arguments_are_ignored(self):
        policy = CommandPolicy(["say"])
        assert policy.is_allowed("say ban everyone") is True
        assert policy.is_allowed("ban say") is False

    def test_leading_slash_is_stripped(self):
        assert CommandPolicy(["kick"]).is_allowed("/kick Steve") is True

    @pytest.mark.parametrize("command", ["/kick Steve", "kick Steve", "/KICK"])
    def test_slash_prefixed_entry_matches(self, command):
        policy = CommandPolicy(["/kick", "/ban*"])
        assert policy.is_allowed(command) is True
        assert policy.match(command) == "/kick"

    def test_slash_prefixed_wildcard_entry(self):
        policy = CommandPolicy(["/ban*"])
        assert policy.is_allowed("/banlist") is True
        assert policy.is_allowed("/pardon Steve") is False

    def test_regex_characters_are_literal(self):
        policy = CommandPolicy(["tp.x"])
        assert policy.is_allowed("tp.x") is True
        assert policy.is_allowed("tpax") is False

    def test_empty_command_is_denied(self):
        assert CommandPolicy(["*say"]).is_allowed("   ") is False

    def test_match_reports_matching_entry(self):
        policy = CommandPolicy(["list", "ban*"])
        assert policy.match("banlist") == "ban*"
        assert policy.match("stop") is None


class TestPolicyState:
    """Tests for enable/disable, reload and listing."""

    def test_disabled_whitelist_allows_everything(self):
        policy = CommandPolicy([], enabled=False)
        assert policy.is_allowed("stop") is True

    def test_empty_enabled_whitelist_denies_everything(self):
        assert CommandPolicy([]).is_allowed("list") is False

    def test_reload_swaps_patterns(self):
        policy = CommandPolicy(["list"])
        policy.reload(["say"])

        assert policy.is_allowed("list") is False
        assert policy.is_allowed("say hi") is True
        assert policy.entries == ("say",)

    def test_reload_can_disable(self):
        policy = CommandPolicy(["list"])
        policy.reload(["list"], enabled=False)
        assert policy.enabled is False
        assert policy.is_allowed("stop") is True

    def test_blank_entries_are_dropped(self):
        assert CommandPolicy(["list", "", "  "]).entries == ("list",)

    def test_describe(self):
        assert CommandPolicy(["list", "ban*"]).describe() == ["list", "ban*"]
        assert CommandPolicy(["*"]).describe()[0].startswith("ALL_COMMANDS_ALLOWED")
        assert "disabled" in CommandPolicy([], enabled=False).describe()[0]


def test_base_command():
    assert base_command("  tp Steve 0 64 0") == "tp"
    assert base_command("/say hi") == "say"
    assert base_command("") == ""
