"""Tests for the Babbler CLI."""
import pytest

from babbler.cli import main


@pytest.fixture
def cli_brain(tmp_babbler_dir):
    """Path of a brain created through the CLI."""
    path = tmp_babbler_dir / "cli.db"
    main(["-b", str(path), "init"])
    return path


@pytest.fixture
def corpus(tmp_path):
    path = tmp_path / "corpus.txt"
    path.write_text("a b c\nshort\n", encoding="utf-8")
    return path


class TestInit:
    def test_init_creates_brain(self, tmp_babbler_dir, capsys):
        path = tmp_babbler_dir / "new.db"
        main(["-b", str(path), "init", "--order", "2", "--megahal"])
        out = capsys.readouterr().out
        assert "Initialized brain" in out
        assert "order 2" in out
        assert "MegaHAL" in out
        assert path.exists()

    def test_init_defaults_to_babbler_home(self, tmp_babbler_dir):
        main(["init"])
        assert (tmp_babbler_dir / "brain.db").exists()

    def test_init_refuses_existing_brain(self, cli_brain, capsys):
        with pytest.raises(SystemExit) as exc:
            main(["-b", str(cli_brain), "init"])
        assert exc.value.code == 1
        assert "already exists" in capsys.readouterr().err


class TestLearnAndReply:
    def test_learn_file(self, cli_brain, corpus, capsys):
        main(["-b", str(cli_brain), "learn", str(corpus)])
        assert "Learned 2 line(s)" in capsys.readouterr().out

    def test_reply_after_learn(self, cli_brain, corpus, capsys):
        main(["-b", str(cli_brain), "learn", str(corpus)])
        capsys.readouterr()
        main(["-b", str(cli_brain), "reply", "--loop-ms", "0", "b"])
        assert capsys.readouterr().out.strip() == "a b c"

    def test_reply_on_empty_brain(self, cli_brain, capsys):
        main(["-b", str(cli_brain), "reply", "--loop-ms", "0", "hello"])
        assert capsys.readouterr().out.strip() == "I don't know enough to answer you yet!"

    def test_reply_without_brain(self, tmp_babbler_dir, capsys):
        with pytest.raises(SystemExit) as exc:
            main(["-b", str(tmp_babbler_dir / "missing.db"), "reply", "hi"])
        assert exc.value.code == 1
        assert "babbler init" in capsys.readouterr().err

    def test_console_learns_and_replies(self, cli_brain, monkeypatch, capsys):
        lines = iter(["a b c", "", "b"])

        def fake_input(prompt=""):
            try:
                return next(lines)
            except StopIteration:
                raise EOFError

        monkeypatch.setattr("builtins.input", fake_input)
        main(["-b", str(cli_brain), "console", "--loop-ms", "0"])
        out = capsys.readouterr().out.split()
        assert out.count("c") == 2


class TestAdmin:
    def test_status(self, cli_brain, corpus, capsys):
        main(["-b", str(cli_brain), "learn", str(corpus)])
        capsys.readouterr()
        main(["-b", str(cli_brain), "status"])
        out = capsys.readouterr().out
        assert "Order" in out and "3" in out
        assert "Tokenizer  Cobe" in out
        assert "Stemmer    none" in out
        assert "Edges      6" in out

    def test_set_and_del_stemmer(self, cli_brain, capsys):
        main(["-b", str(cli_brain), "set-stemmer", "english"])
        assert "Stemmer set: english" in capsys.readouterr().out
        main(["-b", str(cli_brain), "status"])
        assert "english" in capsys.readouterr().out

        main(["-b", str(cli_brain), "del-stemmer"])
        assert "Stemmer removed" in capsys.readouterr().out
        main(["-b", str(cli_brain), "status"])
        assert "Stemmer    none" in capsys.readouterr().out

    def test_unknown_stemmer_language(self, cli_brain, capsys):
        with pytest.raises(SystemExit) as exc:
            main(["-b", str(cli_brain), "set-stemmer", "klingon"])
        assert exc.value.code == 1
        assert "klingon" in capsys.readouterr().err

    def test_no_command_prints_help(self, capsys):
        main([])
        assert "usage" in capsys.readouterr().out


class TestServe:
    def _capture_run_http(self, monkeypatch):
        import babbler.server.http_server as http_server

        calls = []

        async def fake_run_http(brain_path, host, port, api_key):
            calls.append((brain_path, host, port, api_key))

        monkeypatch.setattr(http_server, "run_http", fake_run_http)
        return calls

    def test_serve_without_auth(self, cli_brain, monkeypatch):
        calls = self._capture_run_http(monkeypatch)
        main(["-b", str(cli_brain), "serve", "--port", "9999", "--no-auth"])
        assert calls == [(cli_brain, "127.0.0.1", 9999, None)]

    def test_serve_without_brain(self, tmp_path, monkeypatch, capsys):
        """serve refuses a missing brain before creating it or an api key."""
        calls = self._capture_run_http(monkeypatch)
        home = tmp_path / "no-such-home"
        monkeypatch.setenv("BABBLER_HOME", str(home))

        with pytest.raises(SystemExit) as exc:
            main(["serve"])
        assert exc.value.code == 1
        assert "babbler init" in capsys.readouterr().err
        assert calls == []
        assert not home.exists()

    def test_serve_rejects_incompatible_brain(self, cli_brain, tmp_babbler_dir, monkeypatch, capsys):
        from babbler.sqlite_graph import SQLiteGraph

        graph = SQLiteGraph(cli_brain)
        graph.set_info_text("version", "1")
        graph.commit()
        graph.close()
        calls = self._capture_run_http(monkeypatch)

        with pytest.raises(SystemExit) as exc:
            main(["-b", str(cli_brain), "serve"])
        assert exc.value.code == 1
        assert "version 1" in capsys.readouterr().err
        assert calls == []
        assert not (tmp_babbler_dir / "api_key").exists()

    def test_serve_creates_api_key(self, cli_brain, tmp_babbler_dir, monkeypatch):
        calls = self._capture_run_http(monkeypatch)
        main(["-b", str(cli_brain), "serve"])
        key = (tmp_babbler_dir / "api_key").read_text().strip()
        assert calls[0][2] == 8470
        assert calls[0][3] == key
