from verify import main, verify


def build_tree(tmp_path, make_svf):
    out = tmp_path / "out"
    model_dir = out / "output" / "1"
    model_dir.mkdir(parents=True)
    (model_dir / "model.svf").write_bytes(make_svf("0.pf", "tex/a.png", "embed:/skipped"))
    (model_dir / "0.pf").write_bytes(b"pf")
    return out, model_dir


def test_verify_reports_missing_assets(tmp_path, capsys, make_svf):
    out, _ = build_tree(tmp_path, make_svf)

    assert verify(out) == 1
    captured = capsys.readouterr()
    assert "[NG] missing asset: tex/a.png (listed by output/1/model.svf)" in captured.out
    assert "NG: 1" in captured.out


def test_verify_passes_complete_tree(tmp_path, capsys, make_svf):
    out, model_dir = build_tree(tmp_path, make_svf)
    (model_dir / "tex").mkdir()
    (model_dir / "tex" / "a.png").write_bytes(b"png")

    assert main([str(out)]) == 0
    captured = capsys.readouterr()
    assert "OK: 1" in captured.out
    assert "NG: 0" in captured.out


def test_verify_flags_unreadable_container(tmp_path, capsys):
    out = tmp_path / "out"
    out.mkdir()
    (out / "broken.svf").write_bytes(b"nope")

    assert verify(out) == 1
    assert "[NG] unreadable container: broken.svf" in capsys.readouterr().out


def test_verify_missing_directory(tmp_path, capsys):
    assert verify(tmp_path / "absent") == 1
    assert "output directory not found" in capsys.readouterr().out
