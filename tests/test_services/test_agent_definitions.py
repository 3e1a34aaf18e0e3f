"""Tests for agent definition files."""

from klaude.models.agent import RuntimeKind
from klaude.services.agent_definitions import (
    agent_directories,
    load_agent_definition,
    parse_agent_definition,
)

DEFINITION = """\
name: Code Reviewer
description: Reviews diffs
model: gpt-5
runtime: Cursor
allowedAgents: programmer, Researcher

Review the change carefully.
Point out bugs.
"""


class TestParse:
    def test_header_and_body(self):
        definition = parse_agent_definition("Reviewer", DEFINITION, "/x/reviewer.md")
        assert definition.agent_type == "reviewer"
        assert definition.name == "Code Reviewer"
        assert definition.model == "gpt-5"
        assert definition.runtime == RuntimeKind.CURSOR
        assert definition.allowed_agents == ("programmer", "researcher")
        assert definition.instructions == "Review the change carefully.\nPoint out bugs."
        assert definition.source_path == "/x/reviewer.md"

    def test_missing_allowed_agents_is_unrestricted(self):
        definition = parse_agent_definition("planner", "name: P\n\nPlan.")
        assert definition.allowed_agents is None

    def test_empty_allowed_agents_forbids_spawning(self):
        definition = parse_agent_definition("planner", "allowedAgents:\n\nPlan.")
        assert definition.allowed_agents == ()

    def test_unknown_runtime_ignored(self):
        definition = parse_agent_definition("planner", "runtime: copilot\n\nPlan.")
        assert definition.runtime is None

    def test_body_only(self):
        definition = parse_agent_definition("planner", "Just instructions here.")
        assert definition.instructions == "Just instructions here."
        assert definition.name == ""


class TestLoad:
    def test_project_shadows_user(self, tmp_path):
        project = tmp_path / "repo"
        home = tmp_path / "home"
        (project / ".claude" / "agents").mkdir(parents=True)
        (home / ".claude" / "agents").mkdir(parents=True)
        (project / ".claude" / "agents" / "planner.md").write_text("name: Project\n\nP")
        (home / ".claude" / "agents" / "planner.md").write_text("name: User\n\nU")

        definition = load_agent_definition("planner", str(project), home)
        assert definition.name == "Project"

    def test_falls_back_to_user_scope(self, tmp_path):
        home = tmp_path / "home"
        (home / ".claude" / "agents").mkdir(parents=True)
        (home / ".claude" / "agents" / "Researcher.md").write_text("name: User\n\nU")
        definition = load_agent_definition("researcher", str(tmp_path / "repo"), home)
        assert definition.name == "User"

    def test_missing(self, tmp_path):
        assert load_agent_definition("planner", str(tmp_path), tmp_path / "home") is None

    def test_directories_deduplicated(self, tmp_path):
        dirs = agent_directories(str(tmp_path), tmp_path)
        assert len(dirs) == 1
