from __future__ import annotations

from pathlib import Path

import pytest

from pagesnap.settings import get_settings, load_config


def _env_file(tmp_path: Path, body: str) -> str:
    path = tmp_path / ".env"
    path.write_text(body, "utf-8")
    return str(path)


def test_settings_read_env_file(tmp_path: Path) -> None:
    env_path = _env_file(
        tmp_path,
        "\n".join(
            [
                "READINESS_BUDGET_RATIO=0.25",
                "FRAMEWORK_DELAYS=React:100, vue:50",
                "BROWSER_LAUNCH_ARGS=--no-sandbox,--mute-audio",
                "USE_CLOUD_STORAGE=true",
                "AWS_S3_BUCKET=shots",
                "AWS_S3_PUBLIC_BASE_URL=https://cdn.example",
                "PUBLIC_UPLOADS_PATH=/static/shots/",
            ]
        ),
    )

    settings = get_settings(env_path)

    assert settings.readiness.budget_ratio == 0.25
    assert dict(settings.readiness.framework_delays) == {"react": 100, "vue": 50}
    assert settings.browser.launch_args == ("--no-sandbox", "--mute-audio")
    assert settings.cloud.enabled is True
    assert settings.cloud.bucket == "shots"
    assert settings.cloud.public_base_url == "https://cdn.example"
    assert settings.cloud.endpoint_url is None
    assert settings.storage.public_uploads_path == "/static/shots"


def test_process_environment_overrides_env_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    env_path = _env_file(tmp_path, "AWS_S3_REGION=eu-west-1\n")
    monkeypatch.setenv("AWS_S3_REGION", "ap-south-1")

    assert load_config(env_path)("AWS_S3_REGION") == "ap-south-1"


@pytest.mark.parametrize(
    "body",
    [
        "READINESS_BUDGET_RATIO=0\n",
        "READINESS_BUDGET_RATIO=1.5\n",
        "NAVIGATION_WAIT_UNTIL=whenever\n",
        "FRAMEWORK_DELAYS=react\n",
        "STUCK_JOB_TIMEOUT_SECONDS=30\n",
    ],
)
def test_invalid_settings_raise(tmp_path: Path, body: str) -> None:
    env_path = _env_file(tmp_path, body)
    with pytest.raises(ValueError):
        get_settings(env_path)


def test_missing_env_file_uses_defaults(tmp_path: Path) -> None:
    settings = get_settings(str(tmp_path / "missing.env"))

    assert settings.browser.headless is True
    assert settings.browser.wait_until == "networkidle"
    assert settings.cloud.cache_control == "max-age=31536000, public"
    assert settings.jobs.stuck_job_timeout_seconds == 600
    assert settings.security.require_api_key is True
