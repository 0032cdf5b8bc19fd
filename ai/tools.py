# =============================================================================
# ai/tools.py - Claude Tool Definitions and Execution
# =============================================================================
# Tools Claude may call during a proxy request:
# - query_database:      read-only, tenant-scoped lookups (students, classes...)
# - generate_caps_exam:  structured CAPS exam paper, validated before return
# - generate_diagram:    chart / mermaid / svg data for exam questions
#
# Tool results go back to Claude as strings: JSON on success, or
# "Error: <message>" on failure. The proxy's retry logic looks for that
# "Error:" prefix.
# =============================================================================

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable

from ai.anthropic_client import ToolCall
from ai.exam_validator import ExamValidationError, validate_caps_exam
from lib.supabase_client import SupabaseClient

logger = logging.getLogger(__name__)

QUERY_TOOL_ROLES = {"parent", "teacher", "principal", "principal_admin", "superadmin"}
CONTENT_TOOL_ROLES = {"parent", "teacher", "principal", "principal_admin"}

DEFAULT_QUERY_LIMIT = 20
MAX_QUERY_LIMIT = 100


class ToolExecutionError(Exception):
    """A tool could not produce a result. The message is returned to Claude."""


@dataclass
class ToolContext:
    """Who is calling the tool, for tenant scoping."""
    user_id: str
    organization_id: str | None
    role: str
    tier: str = "free"
    is_guest: bool = False

    @property
    def has_organization(self) -> bool:
        return bool(self.organization_id)


@dataclass
class ToolResult:
    """A tool_result block for the continuation call."""
    tool_use_id: str
    content: str
    is_error: bool = False

    def to_block(self) -> dict[str, Any]:
        return {"type": "tool_result", "tool_use_id": self.tool_use_id, "content": self.content}


# =============================================================================
# Tool Schemas
# =============================================================================

QUERY_DATABASE_TOOL = {
    "name": "query_database",
    "description": (
        "Execute safe, read-only database queries to retrieve information about students, "
        "teachers, classes, assignments, and attendance. Use this when the user asks about "
        "their students, classes, or school data. All queries respect tenant isolation."
    ),
    "input_schema": {
        "type": "object",
        "properties": {
            "query_type": {
                "type": "string",
                "enum": ["list_students", "list_teachers", "list_classes", "list_assignments", "list_attendance"],
                "description": "Type of query to execute",
            },
            "student_id": {"type": "string", "description": "Restrict to one student (UUID)"},
            "class_id": {"type": "string", "description": "Restrict to one class (UUID)"},
            "limit": {"type": "number", "description": "Maximum rows to return (default: 20, max: 100)"},
        },
        "required": ["query_type"],
    },
}

GENERATE_CAPS_EXAM_TOOL = {
    "name": "generate_caps_exam",
    "description": (
        "Generate a structured, CAPS-aligned examination paper with interactive questions.\n\n"
        "Questions MUST:\n"
        "1. Include ALL data inline as text OR use the diagram field for visual aids\n"
        "2. Use clear action verbs (Calculate, List, Identify, Rewrite, Complete, etc.)\n"
        "3. Never refer to a picture, chart, or table that is not provided\n\n"
        'Good: "Calculate the common difference: 2, 5, 8, 11, 14"\n'
        'Good: "Rewrite in past tense: The children are playing"'
    ),
    "input_schema": {
        "type": "object",
        "properties": {
            "title": {"type": "string", "description": "Exam title"},
            "grade": {
                "type": "string",
                "enum": [
                    "grade_r", "grade_1", "grade_2", "grade_3", "grade_4", "grade_5", "grade_6",
                    "grade_7", "grade_8", "grade_9", "grade_10", "grade_11", "grade_12",
                ],
                "description": "Student grade level",
            },
            "subject": {"type": "string", "description": "Subject name (e.g., Mathematics)"},
            "language": {
                "type": "string",
                "enum": ["en-ZA", "af-ZA", "zu-ZA", "xh-ZA"],
                "description": "Language for exam content",
            },
            "instructions": {"type": "array", "items": {"type": "string"}},
            "totalMarks": {"type": "number", "description": "Total marks for the exam"},
            "sections": {
                "type": "array",
                "description": "Exam sections with questions",
                "items": {
                    "type": "object",
                    "properties": {
                        "title": {"type": "string"},
                        "questions": {
                            "type": "array",
                            "items": {
                                "type": "object",
                                "properties": {
                                    "id": {"type": "string"},
                                    "text": {
                                        "type": "string",
                                        "description": "COMPLETE question text with an action verb and ALL data needed",
                                    },
                                    "type": {
                                        "type": "string",
                                        "enum": ["multiple_choice", "short_answer", "essay", "numeric"],
                                    },
                                    "marks": {"type": "number"},
                                    "options": {"type": "array", "items": {"type": "string"}},
                                    "correctAnswer": {"type": "string"},
                                },
                                "required": ["id", "text", "type", "marks"],
                            },
                        },
                    },
                    "required": ["title", "questions"],
                },
            },
        },
        "required": ["title", "grade", "subject", "sections", "totalMarks"],
    },
}

GENERATE_DIAGRAM_TOOL = {
    "name": "generate_diagram",
    "description": (
        "Generate a diagram, chart, or visual aid for exam questions "
        "(charts, flowcharts, shapes, number lines). Returns diagram data to embed in a question."
    ),
    "input_schema": {
        "type": "object",
        "properties": {
            "type": {"type": "string", "enum": ["chart", "mermaid", "svg"]},
            "data": {
                "type": "object",
                "properties": {
                    "chartType": {"type": "string", "enum": ["bar", "line", "pie"]},
                    "data": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "properties": {"name": {"type": "string"}, "value": {"type": "number"}},
                            "required": ["name", "value"],
                        },
                    },
                    "xKey": {"type": "string"},
                    "yKey": {"type": "string"},
                    "mermaidCode": {"type": "string"},
                    "svg": {"type": "string"},
                },
            },
            "title": {"type": "string"},
            "caption": {"type": "string"},
        },
        "required": ["type", "data"],
    },
}


def get_tools_for_role(role: str | None, tier: str | None = None) -> list[dict[str, Any]]:
    """
    Tools available to a role.

    Tier is accepted for parity with model selection; no tool is tier-gated
    today.
    """
    tools: list[dict[str, Any]] = []
    if role in QUERY_TOOL_ROLES:
        tools.append(QUERY_DATABASE_TOOL)
    if role in CONTENT_TOOL_ROLES:
        tools.append(GENERATE_CAPS_EXAM_TOOL)
        tools.append(GENERATE_DIAGRAM_TOOL)
    return tools


# =============================================================================
# query_database
# =============================================================================

@dataclass(frozen=True)
class QueryDefinition:
    table: str
    columns: str
    extra_filters: tuple[tuple[str, Any], ...] = ()
    personal_allowed: bool = False


QUERY_DEFINITIONS: dict[str, QueryDefinition] = {
    "list_students": QueryDefinition(
        table="students",
        columns="id, first_name, last_name, grade, status, date_of_birth",
        extra_filters=(("status", "active"),),
        personal_allowed=True,
    ),
    "list_teachers": QueryDefinition(
        table="profiles",
        columns="id, full_name, email, role",
        extra_filters=(("role", "teacher"),),
    ),
    "list_classes": QueryDefinition(
        table="classes",
        columns="id, name, grade, teacher_id, student_count",
    ),
    "list_assignments": QueryDefinition(
        table="assignments",
        columns="id, title, subject, due_date, status, class_id",
        personal_allowed=True,
    ),
    "list_attendance": QueryDefinition(
        table="attendance",
        columns="id, student_id, date, status",
        personal_allowed=True,
    ),
}


def _query_limit(value: Any) -> int:
    try:
        limit = int(value) if value else DEFAULT_QUERY_LIMIT
    except (TypeError, ValueError):
        limit = DEFAULT_QUERY_LIMIT
    return max(1, min(limit, MAX_QUERY_LIMIT))


def query_database(tool_input: dict[str, Any], context: ToolContext) -> dict[str, Any]:
    """
    Run one of the predefined read-only queries.

    Users with an organization see their organization's rows. Users without
    one only see their personal rows, and only for personal-capable queries.

    Raises:
        ToolExecutionError: Guest caller, unknown query, or database failure
    """
    if context.is_guest:
        raise ToolExecutionError("Guest users must sign up to access data")

    query_type = tool_input.get("query_type")
    definition = QUERY_DEFINITIONS.get(query_type)
    if definition is None:
        raise ToolExecutionError(f"Invalid query_type: {query_type}")

    if not context.has_organization and not definition.personal_allowed:
        raise ToolExecutionError(f"Query '{query_type}' requires organization membership")

    client = SupabaseClient.get_client()
    query = client.table(definition.table).select(definition.columns)

    if context.has_organization:
        query = query.eq("organization_id", context.organization_id)
        for column, value in definition.extra_filters:
            query = query.eq(column, value)
    else:
        logger.debug(f"Personal query {query_type} for user {context.user_id}")
        query = query.eq("user_id", context.user_id).is_("organization_id", "null")

    if tool_input.get("student_id"):
        query = query.eq("id", tool_input["student_id"])
    if tool_input.get("class_id"):
        query = query.eq("class_id", tool_input["class_id"])

    try:
        response = query.limit(_query_limit(tool_input.get("limit"))).execute()
    except Exception as e:
        logger.error(f"query_database {query_type} failed: {e}")
        raise ToolExecutionError(f"Database query failed: {e}")

    rows = response.data or []
    return {"query_type": query_type, "rows": rows, "row_count": len(rows)}


# =============================================================================
# generate_caps_exam / generate_diagram
# =============================================================================

def generate_caps_exam(tool_input: dict[str, Any], context: ToolContext) -> dict[str, Any]:
    try:
        exam = validate_caps_exam(tool_input)
    except ExamValidationError as e:
        raise ToolExecutionError(e.message)

    question_count = sum(len(s.get("questions") or []) for s in exam["sections"])
    logger.info(f"Exam validated: {len(exam['sections'])} sections, {question_count} questions")
    return exam


def generate_diagram(tool_input: dict[str, Any], context: ToolContext) -> dict[str, Any]:
    diagram_type = tool_input.get("type")
    data = tool_input.get("data")

    if not diagram_type or not data:
        raise ToolExecutionError("Missing required fields: type and data")

    if diagram_type == "chart":
        points = data.get("data")
        if not data.get("chartType") or not isinstance(points, list) or not points:
            raise ToolExecutionError("Chart requires chartType and non-empty data array")
        diagram_data: Any = {
            "chartType": data["chartType"],
            "data": points,
            "xKey": data.get("xKey") or "name",
            "yKey": data.get("yKey") or "value",
        }
    elif diagram_type == "mermaid":
        if not isinstance(data.get("mermaidCode"), str) or not data["mermaidCode"]:
            raise ToolExecutionError("Mermaid diagram requires mermaidCode string")
        diagram_data = data["mermaidCode"]
    elif diagram_type == "svg":
        if not isinstance(data.get("svg"), str) or not data["svg"]:
            raise ToolExecutionError("SVG diagram requires svg markup string")
        diagram_data = data["svg"]
    else:
        raise ToolExecutionError(f"Unsupported diagram type: {diagram_type}")

    return {
        "type": diagram_type,
        "data": diagram_data,
        "title": tool_input.get("title"),
        "caption": tool_input.get("caption"),
    }


TOOL_HANDLERS: dict[str, Callable[[dict[str, Any], ToolContext], dict[str, Any]]] = {
    "query_database": query_database,
    "generate_caps_exam": generate_caps_exam,
    "generate_diagram": generate_diagram,
}


# =============================================================================
# Execution
# =============================================================================

def execute_tool(call: ToolCall, context: ToolContext) -> ToolResult:
    """
    Execute one tool call and render its result for Claude.

    Never raises: every failure becomes an "Error: ..." result.
    """
    logger.info(f"Executing tool {call.name} for user {context.user_id}")

    handler = TOOL_HANDLERS.get(call.name)
    if handler is None:
        return ToolResult(call.id, f"Error: Unknown tool: {call.name}", is_error=True)

    try:
        data = handler(call.input or {}, context)
    except ToolExecutionError as e:
        logger.warning(f"Tool {call.name} failed: {e}")
        return ToolResult(call.id, f"Error: {e}", is_error=True)
    except Exception as e:
        logger.error(f"Tool {call.name} crashed: {e}")
        return ToolResult(call.id, f"Error: Tool execution failed: {e}", is_error=True)

    return ToolResult(call.id, json.dumps(data, default=str))


def execute_tool_calls(calls: list[ToolCall], context: ToolContext) -> list[ToolResult]:
    return [execute_tool(call, context) for call in calls]
