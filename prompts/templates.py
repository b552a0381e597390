"""
Prompt templates for document question answering.

Each query archetype pairs a system prompt with a required JSON response
shape, a temperature and a token budget. Procedural answers run coldest
so step lists come out the same way every time.
"""

import json
from typing import Any, Dict, List

from pydantic import BaseModel

from retrieval.models import QueryType
from utils.tokens import get_token_counter


class PromptTemplate(BaseModel):
    query_type: QueryType
    system_prompt: str
    response_schema: Dict[str, Any]
    temperature: float
    max_tokens: int
    instructions: str
    context_header: str

    @property
    def required_fields(self) -> List[str]:
        return list(self.response_schema.get("required", []))


CITATION_ITEM = {
    "type": "object",
    "properties": {
        "source": {"type": "string"},
        "page": {"type": "number"},
        "section": {"type": "string"},
    },
}


class PromptTemplates:
    """Library of system prompts, response schemas and per-type templates."""

    # ------------------------------------------------------------------
    # Response schemas
    # ------------------------------------------------------------------
    QA_RESPONSE = {
        "type": "object",
        "properties": {
            "answer": {"type": "string", "description": "Concise answer grounded in the provided context"},
            "confidence": {"type": "number", "minimum": 0, "maximum": 1},
            "sections": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Section numbers referenced, e.g. [\"1.2\", \"1.2.1\"]",
            },
            "citations": {"type": "array", "items": CITATION_ITEM},
        },
        "required": ["answer", "confidence", "citations"],
    }

    PROCEDURE_RESPONSE = {
        "type": "object",
        "properties": {
            "answer": {"type": "string", "description": "Brief summary of the procedure"},
            "steps": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Step-by-step instructions, one per item",
            },
            "sections": {"type": "array", "items": {"type": "string"}},
            "citations": {"type": "array", "items": CITATION_ITEM},
            "confidence": {"type": "number", "minimum": 0, "maximum": 1},
        },
        "required": ["answer", "steps", "confidence", "citations"],
    }

    # ------------------------------------------------------------------
    # System prompts
    # ------------------------------------------------------------------
    CITATION_RULES = (
        "CITATION REQUIREMENTS:\n"
        "- Cite inline in the answer text as (Document Name, Page X)\n"
        "- Also list structured citations: {\"source\": \"document name\", \"page\": 12, \"section\": \"1.2.3\"}\n"
        "- Only cite sections that directly support the answer"
    )

    DOCUMENT_QA = (
        "You are a technical documentation assistant.\n\n"
        "Answer using ONLY the provided document excerpts. Preserve section numbering exactly "
        "as written (e.g. \"1.1\", \"2.3.4.1\"). Never invent content that is not in the excerpts.\n\n"
        f"{CITATION_RULES}\n\n"
        "If the excerpts do not contain enough information, say so and give a low confidence score. "
        "Return ONLY valid JSON matching the requested schema."
    )

    PROCEDURE_EXTRACTION = (
        "You are a procedure specialist extracting step-by-step instructions from technical documents.\n\n"
        "Extract complete, ordered procedures. Keep the original step numbering and sub-step hierarchy, "
        "one action per entry in \"steps\". Keep warnings and critical notes exactly as written and "
        "never skip or merge steps.\n\n"
        f"{CITATION_RULES}\n\n"
        "Return ONLY valid JSON matching the requested schema."
    )

    DOCUMENT_ANALYSIS = (
        "You are a technical document analyst.\n\n"
        "Explain how the relevant parts of the documents are organized and relate to each other: "
        "section hierarchies, cross-references, dependencies between procedures. Support every "
        "claim with the excerpts provided.\n\n"
        f"{CITATION_RULES}\n\n"
        "Return ONLY valid JSON matching the requested schema."
    )

    PLAIN_SYSTEM_PROMPT = (
        "You are an AI assistant that answers questions based on provided document excerpts. "
        "Use only the information in the excerpts. If they do not contain the answer, say that "
        "the documents do not cover it. Always cite your sources with the document name and "
        "page number, e.g. (Manual, Page 4)."
    )

    DEFAULT_CONTEXT_HEADER = "Relevant information from the documents:\n\n"
    NO_CONTEXT = "No relevant information found in the documents."

    _TEMPLATES: Dict[QueryType, PromptTemplate] = {}

    @classmethod
    def for_query_type(cls, query_type: QueryType) -> PromptTemplate:
        """Template for a classified query."""
        if not cls._TEMPLATES:
            cls._TEMPLATES = cls._build_templates()
        return cls._TEMPLATES[query_type]

    @classmethod
    def _build_templates(cls) -> Dict[QueryType, PromptTemplate]:
        return {
            QueryType.PROCEDURAL: PromptTemplate(
                query_type=QueryType.PROCEDURAL,
                system_prompt=cls.PROCEDURE_EXTRACTION,
                response_schema=cls.PROCEDURE_RESPONSE,
                temperature=0.05,
                max_tokens=3000,
                instructions="List every step of the procedure in order, with citations.",
                context_header="Procedure excerpts from the documents:\n\n",
            ),
            QueryType.DEFINITIONAL: PromptTemplate(
                query_type=QueryType.DEFINITIONAL,
                system_prompt=cls.DOCUMENT_QA,
                response_schema=cls.QA_RESPONSE,
                temperature=0.1,
                max_tokens=2500,
                instructions="Give the definition or explanation as stated in the documents, with citations.",
                context_header="Definitions and explanations from the documents:\n\n",
            ),
            QueryType.ANALYTICAL: PromptTemplate(
                query_type=QueryType.ANALYTICAL,
                system_prompt=cls.DOCUMENT_ANALYSIS,
                response_schema=cls.QA_RESPONSE,
                temperature=0.15,
                max_tokens=3500,
                instructions="Analyze the excerpts and explain the structure or relationships asked about.",
                context_header="Document excerpts for analysis:\n\n",
            ),
            QueryType.GENERAL: PromptTemplate(
                query_type=QueryType.GENERAL,
                system_prompt=cls.DOCUMENT_QA,
                response_schema=cls.QA_RESPONSE,
                temperature=0.1,
                max_tokens=2500,
                instructions="Answer the query using the excerpts above, with citations.",
                context_header=cls.DEFAULT_CONTEXT_HEADER,
            ),
        }

    @staticmethod
    def build_user_prompt(template: PromptTemplate, context: str, query: str) -> str:
        """Context, then the query, then instructions and the JSON schema."""
        return (
            f"{context}\n\n"
            f"QUERY: {query}\n\n"
            f"{template.instructions}\n\n"
            f"Respond with JSON matching this schema:\n"
            f"{json.dumps(template.response_schema, indent=2)}"
        )

    @staticmethod
    def build_plain_prompt(context: str, query: str) -> str:
        return (
            f"{context}\n\n"
            f"Question: {query}\n\n"
            "Please answer the question based on the information provided above. "
            "Remember to cite your sources with page numbers."
        )

    @staticmethod
    def optimize_prompt_length(prompt: str, max_tokens: int, buffer_tokens: int = 100) -> str:
        """Trim the context part of a prompt so the whole fits in max_tokens.

        The query and everything after it are kept intact.
        """
        counter = get_token_counter()
        if counter.count(prompt) <= max_tokens - buffer_tokens:
            return prompt

        context, separator, rest = prompt.partition("\n\nQUERY:")
        if not separator:
            return prompt

        tail = separator + rest
        budget = max_tokens - buffer_tokens - counter.count(tail)
        if budget <= 0:
            return tail.lstrip()
        trimmed, _ = counter.split_at_token_count(context, budget)
        return trimmed.rstrip() + tail

    @staticmethod
    def generate_fallback_response(query: str, context: str) -> str:
        """Low-effort answer used when the model returns nothing usable."""
        if not context or context == PromptTemplates.NO_CONTEXT:
            return (
                f"I could not find information about \"{query}\" in the available documents. "
                "Try rephrasing the question or uploading documents that cover this topic."
            )
        return (
            f"I found documents related to \"{query}\" but could not produce a structured answer. "
            "Please review the cited sources directly."
        )
