import json

import pytest

from scripts import check_payments


def test_cli_runs_one_sweep(capsys):
    assert check_payments.main(["--older-than-minutes", "5", "--limit", "10"]) == 0
    out = json.loads(capsys.readouterr().out)
    assert out == {"success": True, "checked": 0, "updated": 0, "errors": []}


@pytest.mark.parametrize("argv", [
    ["--limit", "0"],
    ["--limit", "101"],
    ["--older-than-minutes", "61"],
    ["--provider", "stripe"],
])
def test_cli_rejects_bad_arguments(argv):
    with pytest.raises(SystemExit):
        check_payments.parse_args(argv)


def test_cli_defaults():
    args = check_payments.parse_args([])
    assert args.provider is None
    assert args.older_than_minutes == 5
    assert args.limit == 100
