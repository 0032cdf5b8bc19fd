# =============================================================================
# tests/test_tools.py - Claude Tool Tests
# =============================================================================
# Run with: pytest tests/test_tools.py -v
# =============================================================================

import json
from unittest.mock import patch

import pytest

from ai.anthropic_client import ToolCall
from ai.tools import (
    MAX_QUERY_LIMIT,
    ToolContext,
    ToolExecutionError,
    execute_tool,
    execute_tool_calls,
    generate_diagram,
    get_tools_for_role,
    query_database,
)

SCHOOL_ID = "55555555-5555-5555-5555-555555555555"


@pytest.fixture
def school_context():
    return ToolContext(user_id="user-1", organization_id=SCHOOL_ID, role="teacher")


@pytest.fixture
def personal_context():
    return ToolContext(user_id="user-2", organization_id=None, role="parent")


class TestToolsForRole:
    """Tests for get_tools_for_role."""

    def test_teacher_gets_all_tools(self):
        """Teachers can query data and generate content."""
        names = [t["name"] for t in get_tools_for_role("teacher")]

        assert names == ["query_database", "generate_caps_exam", "generate_diagram"]

    def test_superadmin_only_queries(self):
        """Superadmins get the query tool only."""
        names = [t["name"] for t in get_tools_for_role("superadmin")]

        assert names == ["query_database"]

    def test_unknown_role_gets_nothing(self):
        """Unknown or missing roles get no tools."""
        assert get_tools_for_role(None) == []
        assert get_tools_for_role("visitor") == []


class TestQueryDatabase:
    """Tests for the query_database tool."""

    def test_guest_rejected(self, school_context):
        """Guests must sign up first."""
        school_context.is_guest = True

        with pytest.raises(ToolExecutionError, match="Guest users"):
            query_database({"query_type": "list_students"}, school_context)

    def test_invalid_query_type(self, school_context):
        """Unknown query types are rejected."""
        with pytest.raises(ToolExecutionError, match="Invalid query_type"):
            query_database({"query_type": "drop_tables"}, school_context)

    def test_org_only_query_without_org(self, personal_context):
        """list_teachers needs an organization."""
        with pytest.raises(ToolExecutionError, match="requires organization membership"):
            query_database({"query_type": "list_teachers"}, personal_context)

    def test_org_scoped_query(self, school_context, supabase_query):
        """Organization members are filtered by organization and extra filters."""
        client, query = supabase_query
        query.execute.return_value.data = [{"id": "t1", "full_name": "Ms Dlamini"}]

        with patch("ai.tools.SupabaseClient") as mock_supabase:
            mock_supabase.get_client.return_value = client
            result = query_database({"query_type": "list_teachers", "limit": 500}, school_context)

        client.table.assert_called_with("profiles")
        query.eq.assert_any_call("organization_id", SCHOOL_ID)
        query.eq.assert_any_call("role", "teacher")
        query.limit.assert_called_with(MAX_QUERY_LIMIT)
        assert result == {"query_type": "list_teachers", "rows": [{"id": "t1", "full_name": "Ms Dlamini"}], "row_count": 1}

    def test_personal_query(self, personal_context, supabase_query):
        """Users without an organization only see their own rows."""
        client, query = supabase_query

        with patch("ai.tools.SupabaseClient") as mock_supabase:
            mock_supabase.get_client.return_value = client
            result = query_database({"query_type": "list_students"}, personal_context)

        query.eq.assert_any_call("user_id", "user-2")
        query.is_.assert_called_with("organization_id", "null")
        assert result["row_count"] == 0

    def test_database_failure(self, school_context, supabase_query):
        """Database errors become ToolExecutionError."""
        client, query = supabase_query
        query.execute.side_effect = RuntimeError("connection reset")

        with patch("ai.tools.SupabaseClient") as mock_supabase:
            mock_supabase.get_client.return_value = client
            with pytest.raises(ToolExecutionError, match="Database query failed"):
                query_database({"query_type": "list_classes"}, school_context)


class TestGenerateDiagram:
    """Tests for the generate_diagram tool."""

    def test_chart_defaults(self, school_context):
        """Charts default xKey/yKey to name/value."""
        result = generate_diagram(
            {"type": "chart", "data": {"chartType": "bar", "data": [{"name": "Mon", "value": 3}]}, "title": "Days"},
            school_context,
        )

        assert result["data"]["xKey"] == "name"
        assert result["data"]["yKey"] == "value"
        assert result["title"] == "Days"

    def test_chart_requires_points(self, school_context):
        with pytest.raises(ToolExecutionError, match="chartType and non-empty data"):
            generate_diagram({"type": "chart", "data": {"chartType": "pie", "data": []}}, school_context)

    def test_mermaid(self, school_context):
        """Mermaid diagrams return the code string."""
        result = generate_diagram({"type": "mermaid", "data": {"mermaidCode": "graph TD; A-->B"}}, school_context)

        assert result["data"] == "graph TD; A-->B"

    def test_unsupported_type(self, school_context):
        with pytest.raises(ToolExecutionError, match="Unsupported diagram type"):
            generate_diagram({"type": "hologram", "data": {"x": 1}}, school_context)


class TestExecuteTool:
    """Tests for execute_tool."""

    def test_success_is_json(self, school_context):
        """Successful results are JSON strings."""
        call = ToolCall(id="tu_1", name="generate_diagram", input={"type": "svg", "data": {"svg": "<svg/>"}})

        result = execute_tool(call, school_context)

        assert result.is_error is False
        assert json.loads(result.content)["data"] == "<svg/>"
        assert result.to_block() == {"type": "tool_result", "tool_use_id": "tu_1", "content": result.content}

    def test_unknown_tool(self, school_context):
        """Unknown tools produce an Error: result."""
        result = execute_tool(ToolCall(id="tu_2", name="launch_rockets", input={}), school_context)

        assert result.is_error is True
        assert result.content == "Error: Unknown tool: launch_rockets"

    def test_invalid_exam_is_error_result(self, school_context):
        """Exam validation failures come back as Error: text for the retry loop."""
        call = ToolCall(id="tu_3", name="generate_caps_exam", input={"title": "Quiz"})

        result = execute_tool(call, school_context)

        assert result.is_error is True
        assert result.content.startswith("Error: Missing required fields")

    def test_execute_many(self, school_context):
        """Results keep call order."""
        calls = [
            ToolCall(id="a", name="nope", input={}),
            ToolCall(id="b", name="generate_diagram", input={"type": "svg", "data": {"svg": "<svg/>"}}),
        ]

        results = execute_tool_calls(calls, school_context)

        assert [r.tool_use_id for r in results] == ["a", "b"]
        assert [r.is_error for r in results] == [True, False]
