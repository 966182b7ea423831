"""
Tests for skill/agent template installation.
"""

from unittest.mock import patch

import pytest
import yaml

from claude_setup.templates import (
    TEMPLATE_UNITS,
    TemplateKind,
    TemplateUnit,
    install_templates,
    render_container_environment,
)


def frontmatter(text):
    assert text.startswith("---\n")
    _, block, _ = text.split("---\n", 2)
    return yaml.safe_load(block)


class TestInstallTemplates:
    def test_installs_unconditional_units(self, settings):
        results = install_templates(settings)

        assert "container-environment" in results["installed"]
        assert "git-workflow" in results["installed"]
        assert "code-reviewer" in results["installed"]
        assert results["failed"] == []
        assert (settings.claude_dir / "skills" / "git-workflow" / "SKILL.md").is_file()
        assert (settings.claude_dir / "agents" / "code-reviewer.md").is_file()

    def test_conditional_units_follow_features(self, make_settings):
        plain = install_templates(make_settings())
        assert "docker-development" not in plain["installed"]
        assert "cloud-infrastructure" not in plain["installed"]

    def test_docker_and_cloud_units(self, make_settings, tmp_path):
        settings = make_settings(
            home=tmp_path / "other-home",
            features={"INCLUDE_DOCKER": True, "INCLUDE_TERRAFORM": True},
        )
        results = install_templates(settings)
        assert "docker-development" in results["installed"]
        assert "cloud-infrastructure" in results["installed"]

    def test_existing_target_is_never_touched(self, settings):
        target = settings.claude_dir / "skills" / "git-workflow" / "SKILL.md"
        target.parent.mkdir(parents=True)
        target.write_text("my own notes")

        results = install_templates(settings)

        assert "git-workflow" in results["skipped"]
        assert target.read_text() == "my own notes"

    def test_second_run_skips_everything(self, settings):
        first = install_templates(settings)
        second = install_templates(settings)
        assert second["installed"] == []
        assert sorted(second["skipped"]) == sorted(first["installed"])

    def test_staged_templates_take_precedence(self, settings):
        staged = settings.templates_dir / "agents" / "debugger" / "debugger.md"
        staged.parent.mkdir(parents=True)
        staged.write_text("---\nname: debugger\ndescription: staged\n---\n")

        install_templates(settings)

        installed = settings.claude_dir / "agents" / "debugger.md"
        assert frontmatter(installed.read_text())["description"] == "staged"

    def test_interrupted_write_leaves_no_target(self, settings):
        units = [unit for unit in TEMPLATE_UNITS if unit.id == "git-workflow"]
        target = units[0].target(settings.claude_dir)

        with patch("claude_setup.endpoints.os.replace", side_effect=KeyboardInterrupt):
            with pytest.raises(KeyboardInterrupt):
                install_templates(settings, units=units)

        assert not target.exists()
        assert list(target.parent.iterdir()) == []

        results = install_templates(settings, units=units)
        assert results["installed"] == ["git-workflow"]
        assert frontmatter(target.read_text())["name"] == "git-workflow"

    def test_write_error_is_reported_and_retried(self, settings):
        units = [unit for unit in TEMPLATE_UNITS if unit.id == "code-reviewer"]

        with patch("claude_setup.endpoints.os.replace", side_effect=OSError("No space left on device")):
            results = install_templates(settings, units=units)

        assert results["failed"] == [("code-reviewer", "No space left on device")]
        assert install_templates(settings, units=units)["installed"] == ["code-reviewer"]

    def test_undecodable_staged_template_is_reported(self, settings):
        staged = settings.templates_dir / "agents" / "debugger" / "debugger.md"
        staged.parent.mkdir(parents=True)
        staged.write_bytes(b"---\nname: \xff\xfe\n---\n")
        units = [unit for unit in TEMPLATE_UNITS if unit.id == "debugger"]

        results = install_templates(settings, units=units)

        assert [unit_id for unit_id, _ in results["failed"]] == ["debugger"]
        assert not units[0].target(settings.claude_dir).exists()

    def test_missing_template_is_reported(self, settings):
        unit = TemplateUnit(TemplateKind.SKILL, "does-not-exist")
        results = install_templates(settings, units=[unit])
        assert results["failed"] == [("does-not-exist", "template not found")]

    def test_bundled_templates_have_frontmatter(self, settings):
        install_templates(settings)
        for unit in TEMPLATE_UNITS:
            target = unit.target(settings.claude_dir)
            if target.exists():
                meta = frontmatter(target.read_text())
                assert meta["name"] == unit.id
                assert meta["description"]


class TestContainerEnvironment:
    def test_lists_enabled_toolchains(self, make_settings):
        settings = make_settings(features={
            "INCLUDE_PYTHON_DEV": True,
            "INCLUDE_RUST_DEV": True,
            "INCLUDE_KUBERNETES": True,
        })
        text = render_container_environment(settings)

        assert frontmatter(text)["name"] == "container-environment"
        assert "- Python" in text
        assert "- Rust" in text
        assert "- Kubernetes" in text
        assert "- Go" not in text

    def test_no_toolchains(self, settings):
        text = render_container_environment(settings)
        assert "No optional language toolchains" in text
        assert "Infrastructure tools" not in text
