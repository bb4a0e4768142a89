"""
Test suite for the command-line interface.
"""

import json

import pytest

from relayer.cli import COMMANDS, build_config, create_parser, load_operations
from relayer.core.operation import OperationValidationError

from tests.conftest import ENTRY_POINT, make_operation


class TestParser:
    """Tests for argument parsing."""

    def test_relay_command(self):
        args = create_parser().parse_args(
            ["--chain-id", "5", "relay", "--ops", "ops.json", "--timeout", "12.5", "--wait"]
        )

        assert args.command == "relay"
        assert args.chain_id == 5
        assert args.timeout == 12.5
        assert args.wait is True
        assert args.command in COMMANDS

    def test_overrides_win_over_defaults(self, monkeypatch):
        monkeypatch.setenv("RELAYER_CHAIN_ID", "10")
        args = create_parser().parse_args(["--chain-id", "5", "--entry-point", ENTRY_POINT.lower(), "health"])

        config = build_config(args)

        assert config.chain_id == 5
        assert config.entry_point_address == ENTRY_POINT

    def test_environment_used_without_override(self, monkeypatch):
        monkeypatch.setenv("RELAYER_CHAIN_ID", "10")
        args = create_parser().parse_args(["health"])

        assert build_config(args).chain_id == 10


class TestLoadOperations:
    """Tests for reading operations files."""

    def test_single_object(self, tmp_path, sample_operation):
        path = tmp_path / "op.json"
        path.write_text(json.dumps(sample_operation.to_dict()))

        assert load_operations(str(path)) == [sample_operation]

    def test_list_and_wrapped_list(self, tmp_path):
        ops = [make_operation(nonce=1), make_operation(nonce=2)]
        listed = tmp_path / "list.json"
        wrapped = tmp_path / "wrapped.json"
        listed.write_text(json.dumps([op.to_dict() for op in ops]))
        wrapped.write_text(json.dumps({"ops": [op.to_dict() for op in ops]}))

        assert load_operations(str(listed)) == ops
        assert load_operations(str(wrapped)) == ops

    def test_invalid_document(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("42")

        with pytest.raises(OperationValidationError):
            load_operations(str(path))
