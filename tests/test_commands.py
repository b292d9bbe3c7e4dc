"""
Tests for external program access (nix_data/services/commands.py).
"""

import pytest

from nix_data.domain.errors import CommandError
from nix_data.services.commands import (
    EvalResult,
    SubprocessNixCommands,
    extract_option_array,
    first_line,
    parse_nix_list,
)

CONFIGURATION = """
{ config, pkgs, ... }:

{
  imports = [ ./hardware-configuration.nix ];

  # environment.systemPackages = [ pkgs.commented ];
  environment.systemPackages = with pkgs; [
    firefox
    pkgs.hello
    (python3.withPackages (ps: [ ps.requests ]))
    /* vim */ neovim
    "not-a-reference"
    [ nested ]
    git  # version control
  ];

  services.openssh.enable = true;
}
"""


class TestParseNixList:
    def test_plain_list(self):
        assert parse_nix_list("[ firefox pkgs.hello ]") == ["firefox", "pkgs.hello"]

    def test_with_prefix(self):
        assert parse_nix_list("with pkgs; [ git jq ]") == ["git", "jq"]

    def test_no_list(self):
        assert parse_nix_list("pkgs.hello") == []

    def test_nix_editor_output(self):
        assert parse_nix_list('[\n  "firefox"\n  pkgs.git\n]\n') == ["pkgs.git"]


class TestExtractOptionArray:
    def test_skips_comments_and_non_references(self):
        assert extract_option_array(CONFIGURATION, "environment.systemPackages") == [
            "firefox",
            "pkgs.hello",
            "neovim",
            "git",
        ]

    def test_missing_option(self):
        assert extract_option_array("{ }", "environment.systemPackages") == []

    def test_non_list_value_does_not_read_next_option(self):
        """A value that is not a list literal must not borrow a later option's list."""
        text = "environment.systemPackages = lib.mkDefault myPkgs;\nfonts.packages = [ noto-fonts ];"
        assert extract_option_array(text, "environment.systemPackages") == []

    def test_concatenation_is_ignored(self):
        text = "environment.systemPackages = [ git ] ++ extraPackages;"
        assert extract_option_array(text, "environment.systemPackages") == []

    def test_list_value_stops_at_its_semicolon(self):
        text = "environment.systemPackages = [ git ];\nfonts.packages = [ noto-fonts ];"
        assert extract_option_array(text, "environment.systemPackages") == ["git"]

    def test_nested_with_prefixes(self):
        text = "environment.systemPackages = with pkgs; with gnome; [ nautilus ];"
        assert extract_option_array(text, "environment.systemPackages") == ["nautilus"]


class TestSubprocessNixCommands:
    @pytest.mark.asyncio
    async def test_missing_nix_editor_reads_file(self, tmp_path):
        path = tmp_path / "configuration.nix"
        path.write_text(CONFIGURATION)
        commands = SubprocessNixCommands(nix_editor=str(tmp_path / "no-such-nix-editor"))

        assert await commands.read_config_array(path) == ["firefox", "pkgs.hello", "neovim", "git"]

    @pytest.mark.asyncio
    async def test_missing_program_raises_command_error(self, tmp_path):
        commands = SubprocessNixCommands(nix=str(tmp_path / "no-such-nix"))
        with pytest.raises(CommandError) as exc_info:
            await commands.run_search("nixpkgs")
        assert exc_info.value.returncode is None


class TestHelpers:
    def test_eval_result_ok(self):
        assert EvalResult(returncode=0, stdout="1").ok
        assert not EvalResult(returncode=1, stderr="error: boom").ok

    def test_first_line(self):
        assert first_line("\n  24.05.1 (Uakari)\nmore") == "24.05.1 (Uakari)"
        assert first_line("   \n") is None

    def test_command_error_message(self):
        error = CommandError(["nix", "search"], 1, "error: flake not found\n")
        assert str(error) == "nix search exited with status 1: error: flake not found"
