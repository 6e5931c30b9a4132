"""Prompt templates for each answering strategy."""

from __future__ import annotations

from collections.abc import Sequence

RAG_SYSTEM_PROMPT = (
    "You are an AI assistant helping analyze meeting transcripts from Engram.\n"
    "Answer questions based on the meeting context provided below.\n"
    "When referencing information, cite the speaker and timestamp.\n"
    "If the context doesn't contain relevant information, say so honestly.\n"
    "Be concise and focus on extracting actionable insights, key decisions, and important details."
)

EMPTY_TRANSCRIPT_MESSAGE = (
    "This recording doesn't have a transcript yet. The transcription may still be in "
    "progress, or there was no speech detected in the audio."
)


def full_context_system_prompt(recording_title: str) -> str:
    """System prompt used when the whole transcript fits in context.

    Args:
        recording_title: Title shown to the model so it can refer to the meeting.
    """
    return (
        "You are an intelligent meeting assistant with access to the complete transcript "
        "of a recording.\n\n"
        f'Recording: "{recording_title}"\n\n'
        "You have the FULL transcript below. Use it to answer the user's question or request.\n"
        "You can:\n"
        "- Summarize the meeting (if asked)\n"
        "- Extract action items or tasks (if asked)\n"
        "- Identify topics discussed (if asked)\n"
        "- Answer specific questions about what was said\n"
        "- Quote specific speakers and timestamps when relevant\n"
        "- Provide any analysis the user requests\n\n"
        "Be helpful, accurate, and base your response on the transcript content.\n"
        "If something isn't in the transcript, say so."
    )


def map_prompt(time_window: str, query: str) -> str:
    """Per-chunk extraction prompt for the map step."""
    return (
        f"You are analyzing a portion of a meeting transcript ({time_window}).\n\n"
        f'The user asked: "{query}"\n\n'
        "Extract the relevant information from this section that would help answer their request.\n"
        "Be thorough but concise. Include speaker names and key details."
    )


def reduce_prompt(query: str) -> str:
    """Synthesis prompt for the reduce step."""
    return (
        "You analyzed a long meeting transcript in sections. Here are the results from each section.\n\n"
        f'The user\'s original request was: "{query}"\n\n'
        "Now combine these section analyses into a single, coherent response that fully "
        "addresses the user's request.\n"
        "- Don't just list sections - synthesize the information\n"
        "- Remove redundancy\n"
        "- Be comprehensive but well-organized\n"
        "- Use clear markdown formatting\n\n"
        "Respond directly without <think> tags or internal reasoning."
    )


def combine_sections(sections: Sequence[tuple[str, str]]) -> str:
    """Label ``(time_window, summary)`` pairs as numbered sections for the reduce step."""
    return "\n\n".join(
        f"=== Section {i} ({window}) ===\n{summary}" for i, (window, summary) in enumerate(sections, 1)
    )
