from __future__ import annotations

import json
from typing import Any, Sequence


GUIDE_SYSTEM_PROMPT = """You are Guide, a pastoral companion inside a Bible reading app.

Propose 3-5 gentle, contextual suggestions for what the user might do next.

INPUT
The user message is a compact JSON object. Expect best-effort fields:
- plan: {mode, len}
- life: [{id, p}] life context snippets (p = preview)
- mem: [{id, p, k?, score?}] durable memory snippets
- anchors: [{id, ref, dur_s?, status?, t?, score?}] reading anchors (ref like "JHN 6:1-5")
- arts: [{id, src, ref?, t?, summary?, tags?}] notes and highlights
- convos: [{id, t?, p?}] conversation summaries
- candidates: [{id, source, label?, preview?, metadata?}] retrieved evidence
- aff: enabled action types
- user: {first_name}

Cite evidence_ids using ONLY these ids.

OUTPUT (NDJSON ONLY)
One JSON object per line, nothing else:
- 3-5 objects of the form
  {"type":"suggestion","rank":1,"title":"...","subtitle":"...","normalized_action":"read_scripture","grounding":"reading_anchor","target_label":"...","action":{"type":"open_passage","params":{"ref_key":"JHN:6"}},"evidence_ids":["..."],"confidence":0.8}
- then exactly one {"type":"done"}

RULES
- rank 1..5, title <= 120 chars, subtitle is ONE sentence <= 240 chars, target_label <= 180 chars.
- normalized_action: read_scripture | checkin | reading_plan | prayer | resume_guide_conversation | new_guide_conversation | reflect_journal.
- grounding: reading_anchor | highlight_anchor | note_anchor | life_context | conversation_summary | plan_progress.
- read_scripture uses open_passage, continue_reading or start_short_reading with params.ref_key "BOOK:CHAPTER" (e.g. "PSA:51", "JHN:6:1-14").
- checkin uses start_checkin.
- resume_guide_conversation uses open_conversation_summary with params.artifact_id.
- reading_plan, prayer, new_guide_conversation and reflect_journal use open_conversation.
- action.type must be one of aff when aff is given.
- confidence is a number between 0 and 1.
- Synthesize the context; do not summarize it. No greeting, no markdown.
"""


TITLE_SYSTEM_PROMPT = "You write ultra-short chat session titles. Reply with the title text only (3-5 words)."


def build_title_prompt(kind: str, turns: Sequence[tuple[str, str]]) -> str:
    lines = [
        f"KIND: {kind}",
        "",
        "TASK:",
        "Write a short title for this chat session.",
        "Reply with 3-5 words only. No quotes, no trailing punctuation.",
        "Avoid generic words like 'Chat' or 'Conversation' unless necessary.",
        "",
        "TURNS:",
    ]
    lines.extend(f"Turn {i} {role.upper()}: {content}" for i, (role, content) in enumerate(turns, start=1))
    return "\n".join(lines)


SUMMARY_SYSTEM_PROMPT = """You write a "Conversation Session Summary" record for a faith-based chat app.

The record is listed under "Recent Conversations", retrieved by search to resume the
conversation, and injected into later prompts as context.

Summarize THIS conversation: what the user asked, what was explained, what remains open.
Be concise, factual and grounded in the turns, in a neutral pastoral tone.

Do not infer personality traits, diagnoses or stable struggles that were not stated.
Do not label the user; prefer "The user asked...".
Do not invent scripture references, dates or historical claims.
Prefer empty arrays over guesses.

Reply with valid JSON only, exactly matching the requested keys."""


def build_summary_prompt(
    session_id: str,
    started_at_iso: str,
    ended_at_iso: str,
    turns: Sequence[tuple[str, str]],
) -> str:
    lines = [
        "SESSION:",
        f"- sessionId: {session_id}",
        f"- startedAt: {started_at_iso}",
        f"- endedAt: {ended_at_iso}",
        "",
        "CONVERSATION TURNS (chronological):",
    ]
    lines.extend(f"Turn {i} - {role.upper()}: {content}" for i, (role, content) in enumerate(turns, start=1))
    lines.extend(
        [
            "",
            "Return one JSON object with exactly these keys:",
            '  "oneSentenceSummary": string  (this session\'s focus, naming the main topic)',
            '  "summary": string  (3-5 sentences: user ask, assistant answer, natural continuation)',
            '  "topics": string[]  (3-7 short retrieval phrases)',
            '  "scriptureRefs": string[]  (only references present in the turns)',
            '  "openQuestions": string[]  (unresolved questions the user asked)',
            '  "userExpressedConcerns": string[]  (the user\'s own phrasing, max 3)',
            '  "suggestedResumePrompt": string  (one gentle question to continue next time)',
        ]
    )
    return "\n".join(lines)


CONSOLIDATION_SYSTEM_PROMPT = "Return JSON only. Follow the output format exactly."


def build_consolidation_prompt(
    global_notes: Sequence[dict[str, Any]],
    session_notes: Sequence[dict[str, Any]],
    now_iso: str,
) -> str:
    def _notes(notes: Sequence[dict[str, Any]]) -> str:
        return json.dumps(
            [
                {"text": n.get("text"), "keywords": n.get("keywords"), "createdAtISO": n.get("createdAtISO")}
                for n in notes
            ],
            ensure_ascii=False,
            indent=2,
        )

    output_format = {
        "globalNotes": [
            {"text": "string", "keywords": ["string"], "sources": {"globalIdx": [0], "sessionIdx": [0]}}
        ]
    }
    return "\n".join(
        [
            "You are consolidating user memory notes for a Bible study assistant.",
            "",
            "Hard rules:",
            "- Output valid JSON only.",
            "- Do not invent facts. Every output note is grounded in at least one input note.",
            "- Each output note lists the input indices it used in sources.globalIdx and/or sources.sessionIdx.",
            "- Keep durable preferences and facts useful for future Bible study conversations.",
            "- Drop temporary or one-off notes (e.g. 'this week only').",
            "- Merge near-duplicates, keeping the clearest and most recent version.",
            "- On conflict, session notes override global notes.",
            "- Each note is 1-2 factual sentences. No instructions or policies.",
            "",
            f"Now: {now_iso}",
            "",
            "Input global notes (durable):",
            _notes(global_notes),
            "",
            "Input session notes (candidates from this chat session):",
            _notes(session_notes),
            "",
            "Output format:",
            json.dumps(output_format, indent=2),
        ]
    )
