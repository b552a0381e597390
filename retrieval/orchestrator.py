"""
Retrieval-augmented question answering.

Embeds the question, searches the user's chunks, assembles a bounded
context and asks the generation provider for a cited answer. A query never
raises: failures come back as a well-formed low-confidence answer.
"""

import time
from typing import Awaitable, Callable, Dict, List, Sequence, Tuple

from pydantic import BaseModel

from prompts.classifier import QueryClassifier
from prompts.templates import PromptTemplate, PromptTemplates
from prompts.validators import ResponseValidator
from providers.embeddings import EmbeddingProvider
from providers.generation import GenerationProvider
from providers.models import GenerationRequest
from retrieval.models import (
    AnswerMetadata,
    Citation,
    QueryClassification,
    QueryType,
    RAGAnswer,
    RAGStats,
    SearchRequest,
    SearchResult,
    SourceReference,
    StructuredResponse,
)
from utils.logger import setup_logger
from utils.tokens import get_token_counter
import config

logger = setup_logger(__name__)

SearchFn = Callable[[SearchRequest], Awaitable[List[SearchResult]]]

ERROR_ANSWER = "I apologize, but I encountered an error while processing your question. Please try again."
NO_RESULTS_ANSWER = (
    "I couldn't find any relevant information in your documents to answer this question. "
    "Try rephrasing it, or check that the documents you uploaded cover this topic."
)
NO_RESULTS_CONFIDENCE = 0.1
UNMATCHED_CITATION_SIMILARITY = 0.8
EXCERPT_LENGTH = 200


class RAGOptions(BaseModel):
    max_search_results: int = config.MAX_SEARCH_RESULTS
    similarity_threshold: float = config.SIMILARITY_THRESHOLD
    max_response_tokens: int = 1000
    temperature: float = 0.7
    max_context_tokens: int = 3000
    include_source_excerpts: bool = True
    max_sources_per_response: int = 5
    use_query_classification: bool = False
    use_structured_output: bool = False

    @classmethod
    def for_provider(cls, provider_name: str, **overrides) -> "RAGOptions":
        """Defaults tuned for a generation backend.

        Local Ollama models run colder with larger token limits and use
        classified, schema-constrained prompts.
        """
        if provider_name == "ollama":
            overrides = {
                "max_response_tokens": 3000,
                "temperature": 0.1,
                "max_context_tokens": 5000,
                "use_query_classification": True,
                "use_structured_output": True,
                **overrides,
            }
        return cls(**overrides)


def create_excerpt(text: str, max_length: int = EXCERPT_LENGTH) -> str:
    """Short excerpt of a chunk, ending on a sentence where one is close to the limit."""
    if len(text) <= max_length:
        return text
    truncated = text[:max_length]
    last_sentence_end = max(truncated.rfind("."), truncated.rfind("!"), truncated.rfind("?"))
    if last_sentence_end > max_length * 0.7:
        return truncated[:last_sentence_end + 1]
    return truncated.rstrip() + "..."


class RAGOrchestrator:
    """Answers questions over a user's ingested documents."""

    def __init__(
        self,
        embedding_provider: EmbeddingProvider,
        generation_provider: GenerationProvider,
        search: SearchFn,
        options: RAGOptions | None = None,
        classifier: QueryClassifier | None = None
    ):
        """
        Args:
            embedding_provider: Embeds the question; must match the stored vectors
            generation_provider: Produces the answer
            search: Nearest-neighbour search, e.g. VectorStore.search
            options: Defaults depend on the generation provider
            classifier: Query classifier used when classification is enabled
        """
        self.embedding_provider = embedding_provider
        self.generation_provider = generation_provider
        self.search = search
        self.options = options or RAGOptions.for_provider(generation_provider.provider_name)
        self.classifier = classifier or QueryClassifier()
        self.token_counter = get_token_counter()
        self._stats = RAGStats()

    async def answer(
        self,
        query: str,
        user_id: str,
        document_ids: Sequence[str] | None = None,
        max_results: int | None = None
    ) -> RAGAnswer:
        """Answer a question from the user's documents.

        Args:
            query: Natural-language question
            user_id: Owner whose chunks are searched
            document_ids: Restrict the search to these documents
            max_results: Overrides max_search_results

        Returns:
            RAGAnswer; never raises
        """
        started = time.perf_counter()
        metadata = AnswerMetadata(model_used=self.generation_provider.model)
        logger.info(f"RAG query: \"{query[:100]}{'...' if len(query) > 100 else ''}\"")

        try:
            classification = None
            if self.options.use_query_classification:
                classification = self.classifier.classify(query)
                metadata.query_type = classification.type
                metadata.classification_confidence = classification.confidence
                logger.debug(f"Query type: {classification.type.value} ({classification.confidence:.0%})")

            query_embedding = await self.embedding_provider.generate(query)

            search_started = time.perf_counter()
            results = await self.search(SearchRequest(
                query_embedding=query_embedding.vector,
                user_id=user_id,
                similarity_threshold=self.options.similarity_threshold,
                top_k=max_results or self.options.max_search_results,
                document_ids=list(document_ids) if document_ids else None
            ))
            metadata.search_time = time.perf_counter() - search_started
            metadata.results_found = len(results)

            if not results:
                logger.info("No relevant chunks found")
                metadata.total_time = time.perf_counter() - started
                self._record(metadata.total_time, NO_RESULTS_CONFIDENCE, success=True)
                return RAGAnswer(text=NO_RESULTS_ANSWER, confidence=NO_RESULTS_CONFIDENCE, metadata=metadata)

            template = PromptTemplates.for_query_type(classification.type) if classification else None
            context = self.build_context(results, template)

            generation_started = time.perf_counter()
            if classification is not None:
                text, structured, tokens = await self._generate_structured(query, context, classification, template)
            else:
                text, tokens = await self._generate_plain(query, context)
                structured = None
            metadata.generation_time = time.perf_counter() - generation_started
            metadata.tokens_used = tokens

            confidence = self.calculate_confidence(results, text)
            sources = self.extract_sources(results, structured.citations if structured else [])

            metadata.total_time = time.perf_counter() - started
            self._record(metadata.total_time, confidence, success=True)
            logger.info(
                f"RAG query completed in {metadata.total_time:.2f}s: "
                f"{len(sources)} sources, confidence {confidence:.0%}"
            )
            return RAGAnswer(text=text, sources=sources, confidence=confidence, metadata=metadata)

        except Exception as e:
            logger.error(f"RAG query failed: {e}")
            metadata.error = str(e) or type(e).__name__
            metadata.total_time = time.perf_counter() - started
            self._record(metadata.total_time, 0.0, success=False)
            return RAGAnswer(text=ERROR_ANSWER, confidence=0.0, metadata=metadata)

    # ------------------------------------------------------------------
    # Context
    # ------------------------------------------------------------------

    def build_context(self, results: Sequence[SearchResult], template: PromptTemplate | None = None) -> str:
        """Format results into a context block within max_context_tokens.

        Results are added in order and the first one that does not fit ends
        the context; results are never cut mid-text.
        """
        if not results:
            return PromptTemplates.NO_CONTEXT

        context = template.context_header if template else PromptTemplates.DEFAULT_CONTEXT_HEADER
        used = self.token_counter.estimate(context)

        for result in results:
            location = f"Page {result.page_number}"
            if result.section_title:
                location += f" - {result.section_title}"
            block = f"Document: {result.document_name}\n{location}\nContent: {result.text}\n\n"

            block_tokens = self.token_counter.estimate(block)
            if used + block_tokens > self.options.max_context_tokens:
                break
            context += block
            used += block_tokens

        return context

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    async def _generate_structured(
        self,
        query: str,
        context: str,
        classification: QueryClassification,
        template: PromptTemplate
    ) -> Tuple[str, StructuredResponse, int]:
        prompt = PromptTemplates.build_user_prompt(template, context, query)
        prompt = PromptTemplates.optimize_prompt_length(
            prompt, self.options.max_context_tokens + self.options.max_response_tokens
        )
        request = GenerationRequest(
            prompt=prompt,
            system_prompt=template.system_prompt,
            max_tokens=min(template.max_tokens, self.options.max_response_tokens, self.generation_provider.max_tokens),
            temperature=template.temperature,
            metadata={"query_type": classification.type.value}
        )

        if self.options.use_structured_output:
            result = await self.generation_provider.generate_structured(request, template.response_schema)
        else:
            result = await self.generation_provider.generate(request)

        if not result.text.strip():
            logger.warning("Empty completion, using fallback response")
            structured = StructuredResponse(
                answer=PromptTemplates.generate_fallback_response(query, context),
                confidence=0.3,
                is_fallback=True
            )
        else:
            structured = ResponseValidator.validate_and_sanitize(result.text, classification.type)

        text = structured.answer
        if classification.type == QueryType.PROCEDURAL and structured.steps:
            steps = "\n".join(f"{number}. {step}" for number, step in enumerate(structured.steps, start=1))
            text = f"{text}\n\n{steps}"

        return text, structured, result.usage.total_tokens

    async def _generate_plain(self, query: str, context: str) -> Tuple[str, int]:
        request = GenerationRequest(
            prompt=PromptTemplates.build_plain_prompt(context, query),
            system_prompt=PromptTemplates.PLAIN_SYSTEM_PROMPT,
            max_tokens=min(self.options.max_response_tokens, self.generation_provider.max_tokens),
            temperature=self.options.temperature
        )
        result = await self.generation_provider.generate(request)

        text = result.text.strip()
        if not text:
            logger.warning("Empty completion, using fallback response")
            text = PromptTemplates.generate_fallback_response(query, context)
        return text, result.usage.total_tokens

    # ------------------------------------------------------------------
    # Scoring and sources
    # ------------------------------------------------------------------

    @staticmethod
    def calculate_confidence(results: Sequence[SearchResult], answer: str) -> float:
        """Blend retrieval quality, result count and answer length into [0.1, 1.0]."""
        if not results:
            return NO_RESULTS_CONFIDENCE

        top = results[:3]
        avg_similarity = sum(r.similarity_score for r in top) / len(top)
        result_factor = min(len(results) / 5, 1.0)
        length_factor = min(len(answer) / 100, 1.0)

        confidence = avg_similarity * 0.5 + result_factor * 0.3 + length_factor * 0.2
        return max(0.1, min(1.0, confidence))

    def extract_sources(
        self,
        results: Sequence[SearchResult],
        citations: Sequence[Citation] = ()
    ) -> List[SourceReference]:
        """Sources for an answer.

        Model citations win when present, matched back to search results by
        document name and page; otherwise the top results are used.
        """
        limit = self.options.max_sources_per_response
        if citations:
            sources: List[SourceReference] = []
            seen = set()
            for citation in citations:
                source = self._source_for_citation(citation, results)
                key = (source.document_id, source.document_name, source.page_number)
                if key in seen:
                    continue
                seen.add(key)
                sources.append(source)
            return sources[:limit]

        return [self._source_for_result(result) for result in results[:limit]]

    def _source_for_result(self, result: SearchResult) -> SourceReference:
        return SourceReference(
            document_id=result.document_id,
            document_name=result.document_name,
            page_number=result.page_number,
            section_title=result.section_title,
            excerpt=create_excerpt(result.text) if self.options.include_source_excerpts else None,
            similarity_score=result.similarity_score
        )

    def _source_for_citation(self, citation: Citation, results: Sequence[SearchResult]) -> SourceReference:
        for result in results:
            if citation.page == result.page_number and self._names_match(citation.source, result.document_name):
                return self._source_for_result(result)

        return SourceReference(
            document_id="unknown",
            document_name=citation.source or "unknown",
            page_number=citation.page,
            section_title=citation.section or None,
            similarity_score=UNMATCHED_CITATION_SIMILARITY
        )

    @staticmethod
    def _names_match(cited: str, document_name: str) -> bool:
        # Cited titles may omit the file extension
        cited, document_name = cited.strip().lower(), document_name.lower()
        return bool(cited) and (cited in document_name or document_name in cited)

    # ------------------------------------------------------------------
    # Stats and health
    # ------------------------------------------------------------------

    def _record(self, elapsed: float, confidence: float, success: bool) -> None:
        stats = self._stats
        stats.total_queries += 1
        if success:
            stats.successful_queries += 1
        n = stats.total_queries
        stats.avg_response_time = (stats.avg_response_time * (n - 1) + elapsed) / n
        stats.avg_confidence = (stats.avg_confidence * (n - 1) + confidence) / n

    def get_stats(self) -> RAGStats:
        return self._stats.model_copy()

    async def test_pipeline(self) -> Dict[str, bool]:
        """Check that both providers are reachable."""
        status = {
            "embedding": await self.embedding_provider.test_connection(),
            "generation": await self.generation_provider.test_connection(),
        }
        if not all(status.values()):
            logger.warning(f"RAG pipeline degraded: {status}")
        return status
