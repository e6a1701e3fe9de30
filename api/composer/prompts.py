"""Prompt templates and fixed replies for legal answer composition.

Templates use ``str.format`` placeholders. Fixed replies are returned to the
user verbatim when the pipeline decides not to call the completion service
with documents.
"""

from __future__ import annotations

import re
from enum import Enum

# ==============================================================================
# SYSTEM INSTRUCTIONS
# ==============================================================================

LEGAL_SYSTEM_PROMPT = """You are a legal research assistant specialised in Slovak case law. You:
1. Give accurate legal information based on the provided context
2. Explain legal concepts clearly and precisely
3. Refer to specific laws and regulations where appropriate
4. Keep a professional, formal register
5. Say so whenever you make assumptions or the information may be incomplete
6. Prefer accuracy over speculation
7. Include citations whenever they are available"""

CONVERSATION_SYSTEM_PROMPT = (
    "You are a legal research assistant. Continue the conversation using the "
    "summary, key points and recent messages provided."
)

ANALYSIS_SYSTEM_PROMPT = (
    "You analyse legal conversations. Respond with JSON only, no prose and no code fences."
)

# ==============================================================================
# RETRIEVAL
# ==============================================================================

QUERY_EXPANSION_PROMPT = """Expand this legal question with relevant legal terminology and concepts:
{query}

Return a single expanded version of the question that includes:
1. Relevant legal terms
2. Related concepts
3. Specific laws or regulations
4. Areas of law

Return ONLY the expanded question."""

# ==============================================================================
# CLASSIFICATION
# ==============================================================================

LEGAL_DOMAINS = (
    "criminal law",
    "civil law",
    "commercial law",
    "administrative law",
    "constitutional law",
    "international law",
    "labour law",
    "family law",
    "financial law",
    "other",
)

DEFAULT_DOMAIN = "other"

IS_LEGAL_QUESTION_PROMPT = """Analyse this question and decide whether it is a legal question:
{question}

Answer ONLY "yes" or "no"."""

CLASSIFY_DOMAIN_PROMPT = """Classify this legal question into exactly one of these categories:
{domains}

Question: {question}

Answer ONLY with the category name."""

NEEDS_RETRIEVAL_PROMPT = """Analyse this question and decide whether answering it requires searching court decisions and legal documents:
{question}

Answer ONLY "yes" or "no"."""

# ==============================================================================
# ANSWER TEMPLATES
# ==============================================================================


class AnswerMode(str, Enum):
    """How the final answer should be framed."""

    STANDARD = "standard"
    EXPLAIN = "explain"
    COMPARE = "compare"
    HYPOTHETICAL = "hypothetical"
    SUMMARIZE = "summarize"
    SPECIFIC_DOCUMENT = "specific_document"


ANSWER_PREAMBLE = """You are a legal assistant specialised in {domain}.
Answer using only the information in the "Knowledge" section and its metadata.
Use your own knowledge only when the Knowledge section has nothing relevant for a general question, and say that such information may be imprecise.
Cite specific parts of decisions (paragraphs) or laws (sections) with the document name and the URL from the metadata when available.

Question: {question}

Conversation history:
{history}

Knowledge:
{context}
"""

MODE_INSTRUCTIONS = {
    AnswerMode.STANDARD: """Please provide:
1. A direct answer to the question
2. Relevant legal principles
3. Applicable laws and regulations
4. Practical examples or cases
5. Important considerations or warnings""",
    AnswerMode.EXPLAIN: """Please explain:
1. The key legal principles
2. The relevant laws and regulations
3. A detailed explanation
4. Examples of how they apply
5. Related precedents""",
    AnswerMode.COMPARE: """Please compare and provide:
1. The main differences
2. The common elements
3. Practical consequences
4. Relevant examples
5. Related precedents""",
    AnswerMode.HYPOTHETICAL: """Analyse the situation described in the question and provide:
1. Relevant legal principles
2. Applicable laws and regulations
3. Potential outcomes
4. Important considerations
5. Related precedents or cases""",
    AnswerMode.SUMMARIZE: """Please give a comprehensive summary including:
1. The main points and key concepts
2. Important sections and their purpose
3. Legal consequences and applications
4. Related regulations and laws
5. Practical examples or cases""",
    AnswerMode.SPECIFIC_DOCUMENT: """Give a clear overview of the requested decision or law in legal language, focusing on:
1. What it decides or provides
2. Penalties or legal consequences
3. Key legal references
4. Important aspects of the case""",
}

# ==============================================================================
# SUMMARY REGENERATION
# ==============================================================================

CONVERSATION_ANALYSIS_PROMPT = """Analyse the following legal conversation and extract its structure.

Conversation:
{conversation}

Return a JSON object with exactly these keys:
- "topics": list of main topics discussed
- "concepts": list of legal concepts mentioned
- "decisions": list of court decisions or case numbers referred to
- "laws": list of laws or sections referred to
- "flow": one sentence describing how the conversation developed"""

CONDENSE_SUMMARY_PROMPT = """Using this analysis of a legal conversation:
{analysis}

Write a short summary that lets an assistant continue the conversation.
Return a JSON object with exactly these keys:
- "summary": at most three sentences of prose
- "key_points": at most {max_key_points} short bullet points"""

FALLBACK_SUMMARY_PROMPT = """Summarise this legal conversation in a few sentences, then list at most {max_key_points} key points, one per line, each starting with "- ".

Conversation:
{conversation}"""

# ==============================================================================
# INGESTION
# ==============================================================================

CASE_SUMMARY_PROMPT = """Summarise the following court decision for a legal research index.

Decision:
{text}

Please provide:
1. Key points of the decision
2. Legal principles applied
3. Important precedents
4. Practical consequences"""

# ==============================================================================
# FIXED REPLIES
# ==============================================================================

NOT_LEGAL_REPLY = "This is not a legal question. Please ask a question about the law."
NO_RETRIEVAL_REPLY = "This question does not require searching legal documents. Please ask about a specific legal issue or decision."
NO_DOCUMENTS_REPLY = "No relevant documents were found for your question. Try rephrasing it or adding details such as the court or case number."
FAILURE_REPLY = "An error occurred while processing your request. Please try again later."

# ==============================================================================
# ANSWER MODE PRE-FILTER
# ==============================================================================

_MODE_PATTERNS = (
    (AnswerMode.SPECIFIC_DOCUMENT, re.compile(r"law no\.|ruling no\.|§|\b\d+\s*[A-Za-z]{1,3}\s*/\s*\d+\s*/\s*\d{4}\b", re.IGNORECASE)),
    (AnswerMode.SUMMARIZE, re.compile(r"\b(summari[sz]e|sum up|zhr[nň])", re.IGNORECASE)),
    (AnswerMode.COMPARE, re.compile(r"\b(compare|difference between|porovn)", re.IGNORECASE)),
    (AnswerMode.HYPOTHETICAL, re.compile(r"\b(what if|suppose|hypothetic|čo ak)", re.IGNORECASE)),
    (AnswerMode.EXPLAIN, re.compile(r"\b(explain|what does it mean|vysvetli)", re.IGNORECASE)),
)


def detect_answer_mode(question: str) -> AnswerMode:
    """Cheap regex pre-filter choosing the answer framing.

    Only picks a template; whether documents are retrieved at all is decided
    by the completion-based checks.
    """
    for mode, pattern in _MODE_PATTERNS:
        if pattern.search(question):
            return mode
    return AnswerMode.STANDARD


def build_answer_prompt(question: str, history: str, context: str, domain: str, mode: AnswerMode = AnswerMode.STANDARD) -> str:
    preamble = ANSWER_PREAMBLE.format(
        domain=domain if domain and domain != DEFAULT_DOMAIN else "law",
        question=question,
        history=history or "(no previous messages)",
        context=context,
    )
    return f"{preamble}\n{MODE_INSTRUCTIONS[mode]}"


def format_history(messages) -> str:
    """Render a message window as ``role: content`` lines, without the base instruction."""
    lines = []
    for message in messages:
        role = message["role"] if isinstance(message, dict) else message.role
        content = message["content"] if isinstance(message, dict) else message.content
        if role == "system" and content == CONVERSATION_SYSTEM_PROMPT:
            continue
        lines.append(f"{role}: {content}")
    return "\n".join(lines)


def parse_yes_no(response: str) -> bool:
    """Interpret a yes/no classifier reply. Anything unclear is ``False``."""
    answer = response.strip().strip(".!\"'").lower()
    return answer in ("yes", "áno", "ano", "true")


def parse_domain(response: str) -> str:
    """Map a classifier reply onto ``LEGAL_DOMAINS``, defaulting to ``other``."""
    answer = response.strip().strip(".!\"'").lower()
    answer = re.sub(r"^\d+[.)]\s*", "", answer)
    for domain in LEGAL_DOMAINS:
        if answer == domain or domain in answer:
            return domain
    return DEFAULT_DOMAIN
