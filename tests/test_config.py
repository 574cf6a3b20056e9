import pytest

from persist import (
    API_BASE,
    PROPERTY_DATABASE_ROLE,
    JobNotReadyError,
    ProgressReporter,
    apply_overrides,
    ensure_job_complete,
    load_config,
    parse_args,
    split_csv,
)


def test_load_config_defaults_without_file():
    config = load_config(None)
    assert config.api_base == API_BASE
    assert config.output_dir == "output"
    assert config.excluded_roles == (PROPERTY_DATABASE_ROLE,)
    assert config.targets is None


def test_load_config_reads_yaml(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "\n".join(
            [
                "api_base: https://example.test/md/v2/",
                "output_dir: derivatives",
                "excluded_roles: graphics, thumbnail",
                "targets:",
                "  - g1",
                "  - g2",
                "max_retries: 1",
                "delay_sec: 0.5",
            ]
        ),
        encoding="utf-8",
    )
    config = load_config(path)
    assert config.api_base == "https://example.test/md/v2"
    assert config.output_dir == "derivatives"
    assert config.excluded_roles == ("graphics", "thumbnail")
    assert config.targets == ("g1", "g2")
    assert config.max_retries == 1
    assert config.delay_sec == 0.5
    assert config.role_filter().targets == frozenset({"g1", "g2"})


def test_load_config_rejects_non_mapping(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_config(path)


def test_cli_flags_override_config():
    args = parse_args(["dXJu", "-o", "elsewhere", "--exclude-roles", "", "--targets", "a, b,"])
    config = apply_overrides(load_config(None), args)
    assert config.output_dir == "elsewhere"
    assert config.excluded_roles == ()
    assert config.targets == ("a", "b")


def test_split_csv():
    assert split_csv(None) is None
    assert split_csv(" a ,b,, ") == ["a", "b"]
    assert split_csv(["x ", " y"]) == ["x", "y"]


@pytest.mark.parametrize(
    "manifest",
    [
        {"status": "inprogress", "progress": "10% complete"},
        {"status": "failed", "progress": "complete"},
        {},
    ],
)
def test_ensure_job_complete_rejects_unfinished(manifest):
    with pytest.raises(JobNotReadyError):
        ensure_job_complete(manifest)


def test_ensure_job_complete_accepts_success():
    ensure_job_complete({"status": "success", "progress": "complete"})


def test_progress_status_line():
    reporter = ProgressReporter(enabled=False)
    reporter.on_discovered()
    reporter.on_discovered()
    reporter.on_completed()
    assert reporter.status == "Processing: 1 of 2 derivatives saved..."
