from dataclasses import replace
from pathlib import Path

from evidence_rag import config
from evidence_rag.main import build_parser


def test_bootstrap_runtime_dirs_creates_paths(tmp_path, monkeypatch) -> None:
    monkeypatch.setattr(config, "DATA_DIR", tmp_path / "data")
    monkeypatch.setattr(config, "OUTPUTS_DIR", tmp_path / "outputs")
    config.bootstrap_runtime_dirs()
    assert (tmp_path / "data").exists()
    assert (tmp_path / "outputs").exists()


def test_engine_settings_are_frozen_and_replaceable() -> None:
    tuned = replace(config.DEFAULT_SETTINGS, max_repair_attempts=1)
    assert tuned.max_repair_attempts == 1
    assert config.DEFAULT_SETTINGS.max_repair_attempts == config.MAX_REPAIR_ATTEMPTS
    try:
        tuned.max_repair_attempts = 5
        raise AssertionError("Expected EngineSettings to be immutable.")
    except AttributeError:
        pass


def test_parser_reads_question_and_docs() -> None:
    args = build_parser().parse_args(["--question", "Why?", "--docs", "a.txt", "b.pdf", "--top-k", "5"])
    assert args.question == "Why?"
    assert args.docs == ["a.txt", "b.pdf"]
    assert args.top_k == 5
    assert args.output == "outputs/answer_result.json"
    assert not args.offline


def test_main_executes_offline(monkeypatch, tmp_path, capsys) -> None:
    doc = tmp_path / "doc.txt"
    doc.write_text("The levy rises to 40 dollars per tonne in 2026.", encoding="utf-8")
    out = tmp_path / "out.json"

    monkeypatch.setenv("OFFLINE_MODE", "1")
    monkeypatch.setenv("LLM_PROVIDER", "mock")
    monkeypatch.setenv("EMBED_PROVIDER", "hash")
    monkeypatch.setattr(config, "DATA_DIR", tmp_path / "data")
    monkeypatch.setattr(config, "OUTPUTS_DIR", tmp_path / "outputs")

    import evidence_rag.main as main_mod

    monkeypatch.setattr(
        "sys.argv",
        [
            "prog",
            "--question",
            "What happens to the levy in 2026?",
            "--docs",
            str(doc),
            "--output",
            str(out),
            "--offline",
        ],
    )
    main_mod.main()
    assert Path(out).exists()
    printed = capsys.readouterr().out
    assert '"status"' in printed
