import io

from fencedheap import cli
from fencedheap.session import DebugSession


def test_main_prints_greeting(capsys):
    assert cli.main() == 0
    assert capsys.readouterr().out == "Hello, World!\n"


def test_main_ignores_arguments(capsys):
    assert cli.main(["prog", "extra"]) == 0
    assert capsys.readouterr().out == "Hello, World!\n"


def test_main_under_debug_session(capsys):
    session = DebugSession(io.StringIO())
    assert session.call_main(cli.main, ["prog"]) == 0
    assert capsys.readouterr().out == "Hello, World!\n"
    assert session.leak_size() == 0