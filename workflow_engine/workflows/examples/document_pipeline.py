#!/usr/bin/env python3
"""
Document processing workflow.

Runs a document through text extraction, validation, a 3-way parallel
analysis, summarization, human review and publish/archive, using
deterministic collaborators.

Usage:
    python -m workflow_engine.workflows.examples.document_pipeline
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from workflow_engine.collaborators import AgentRegistry, ToolRegistry
from workflow_engine.runtime_data import VariableBinding
from workflow_engine.workflows import (
    AgentStep,
    ConditionalStep,
    HumanInTheLoopStep,
    ParallelStep,
    RAGStep,
    ToolStep,
    TransformStep,
    WorkflowDefinition,
    WorkflowEngine,
)

SAMPLE_DOCUMENT = {
    "id": "doc-2024-001",
    "filename": "contract-2024.pdf",
    "content": (
        "This is a sample legal contract between Company A and Company B. "
        "The agreement outlines the terms of service delivery and payment schedules."
    ),
    "size": 1247,
}

RELATED_DOCUMENTS = [
    {"id": "doc-2023-017", "title": "Master services agreement", "tags": ["contract", "legal"]},
    {"id": "doc-2023-042", "title": "Payment schedule addendum", "tags": ["payment", "contract"]},
    {"id": "doc-2022-003", "title": "Office relocation memo", "tags": ["facilities"]},
]


def build_document_workflow() -> WorkflowDefinition:
    """Build the 8-step document processing workflow."""
    return WorkflowDefinition(
        id="document-processing",
        name="Document Processing Pipeline",
        version="1.0.0",
        timeout=600.0,
        description="Process uploaded documents through validation, analysis, and approval",
        metadata={"tags": ["document", "processing", "ai"]},
        steps=(
            TransformStep(
                id="extract_text",
                input=VariableBinding.variable("document"),
                expression="${$input.content}",
                output="extractedText",
            ),
            ToolStep(
                id="validate_content",
                tool_name="content_length",
                input=VariableBinding.variable("extractedText"),
                output="contentLength",
            ),
            ConditionalStep(
                id="check_content",
                condition="${contentLength}",
                then_steps=(
                    TransformStep(
                        id="mark_valid",
                        input=VariableBinding.literal("valid"),
                        expression="${$input}",
                        output="status",
                    ),
                ),
                else_steps=(
                    TransformStep(
                        id="mark_rejected",
                        input=VariableBinding.literal("rejected"),
                        expression="${$input}",
                        output="status",
                    ),
                ),
            ),
            ParallelStep(
                id="analysis",
                branches=(
                    (
                        AgentStep(
                            id="analyze_sentiment",
                            agent_id="sentiment-analyzer",
                            input=VariableBinding.variable("extractedText"),
                            output="sentiment",
                        ),
                    ),
                    (
                        AgentStep(
                            id="extract_entities",
                            agent_id="entity-extractor",
                            input=VariableBinding.variable("extractedText"),
                            output="entities",
                        ),
                    ),
                    (
                        AgentStep(
                            id="categorize",
                            agent_id="categorizer",
                            input=VariableBinding.variable("extractedText"),
                            output="category",
                        ),
                    ),
                ),
            ),
            TransformStep(
                id="summarize",
                input=VariableBinding.expression(
                    "Sentiment: ${sentiment}, Entities: ${entities}, Category: ${category}"
                ),
                expression="${$input}",
                output="summary",
            ),
            HumanInTheLoopStep(
                id="review",
                prompt="Review and approve document ${document.id}: ${summary}",
                options=("Approve", "Reject", "Request Changes"),
                timeout=300.0,
                assignee="reviewer@company.com",
                output="reviewDecision",
            ),
            ToolStep(
                id="record_decision",
                tool_name="record_decision",
                input=VariableBinding.variable("reviewDecision"),
                output="approved",
            ),
            ConditionalStep(
                id="publish_or_archive",
                condition="${approved}",
                then_steps=(
                    RAGStep(
                        id="find_related",
                        pipeline="documents",
                        query=VariableBinding.variable("category"),
                        top_k=2,
                        output="related",
                    ),
                    ToolStep(
                        id="publish",
                        tool_name="publish",
                        input=VariableBinding.variable("summary"),
                        output="publication",
                    ),
                ),
                else_steps=(
                    ToolStep(
                        id="archive",
                        tool_name="archive",
                        input=VariableBinding.variable("summary"),
                        output="publication",
                    ),
                ),
            ),
        ),
    )


class KeywordPipeline:
    """Retrieval pipeline that matches query words against document tags."""

    def __init__(self, documents: Sequence[Dict[str, Any]]):
        self.documents = list(documents)

    async def query(self, query: str, top_k: Optional[int] = None) -> List[Dict[str, Any]]:
        words = {word.strip("/,").lower() for word in query.replace("/", " ").split()}
        matches = [doc for doc in self.documents if words & set(doc["tags"])]
        return matches[:top_k] if top_k else matches


def build_collaborators() -> Tuple[AgentRegistry, ToolRegistry, Dict[str, KeywordPipeline]]:
    """Deterministic agents, tools and retrieval pipelines for the workflow."""
    agents = AgentRegistry()
    agents.register("sentiment-analyzer", lambda text, context: "positive")
    agents.register(
        "entity-extractor", lambda text, context: "Company A, Company B, Terms of Service"
    )
    agents.register("categorizer", lambda text, context: "Legal/Contract")

    tools = ToolRegistry()
    tools.register("content_length", lambda text: len((text or "").strip()))
    tools.register("record_decision", lambda decision: decision == "Approve")
    tools.register("publish", lambda summary: {"status": "published", "summary": summary})
    tools.register("archive", lambda summary: {"status": "archived", "summary": summary})

    pipelines = {"documents": KeywordPipeline(RELATED_DOCUMENTS)}
    return agents, tools, pipelines


def auto_approve(prompt: str, options: List[str]) -> str:
    """Approval handler that always picks the first option."""
    return options[0] if options else "Approve"


def build_engine(approvals: Any = auto_approve) -> WorkflowEngine:
    """Engine wired to the deterministic collaborators."""
    agents, tools, pipelines = build_collaborators()
    return WorkflowEngine(
        agents=agents, tools=tools, pipelines=pipelines, approvals=approvals
    )


async def main():
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    workflow = build_document_workflow()
    engine = build_engine()

    print(f"Workflow: {workflow.name} ({len(workflow.steps)} steps)")
    result = await engine.execute(workflow, {"document": SAMPLE_DOCUMENT})

    print(f"Status: {result.status.value} in {result.duration:.3f}s")
    for step_id, step_result in result.all_step_results().items():
        print(f"  [{step_result.status.value.upper()}] {step_id} ({step_result.step_type})")

    if result.error:
        print(f"Error: {result.error}")
        return

    for name in ("sentiment", "entities", "category", "summary", "approved", "related"):
        print(f"  {name}: {result.variables.get(name)}")
    print(f"Output: {result.output}")


if __name__ == "__main__":
    asyncio.run(main())
