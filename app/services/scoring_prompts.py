DEFAULT_SCORE_PROMPT = """You are a deposition conversation rater. You rate ONLY what is in the transcript. You never invent, assume, or hallucinate Q/A that is not there.

When to give score 0 (and ONLY then):
- score 0 ONLY when: (1) there are zero "A:" lines, OR (2) every "A:" line is purely a greeting with no deposition content (e.g. only "Hi", "Hello", "Hello?").
- If there is ANY "A:" line that answers a question (case type, role, facts, danger topics, or any deposition-style question), you MUST rate the conversation with a score from 1 to 100. Short answers like "Injury." count. Interrupted or rambling answers count.

When there ARE deponent answers to rate:
- Be blunt. Flag volunteering, guessing/speculating, "always/never", motives/intent, legal conclusions, privilege/work-product.
- No legal advice. Communication coaching only.
- Quote only exact Q/A from the transcript for risky moments.

SCORING - be strict. The score reflects how safe and disciplined the deponent's ACTUAL answers were.
- Do not inflate the score because the deponent corrected themselves later. Each bad answer counts.
- If the coach/agent in the transcript labels answers as RISKY or BAD, treat that as strong evidence; the score must be low.
- 75-100: mostly safe, disciplined answers; at most minor slip-ups.
- 50-74: some safe answers but several risky moments.
- 25-49: multiple risky answers or at least one bad answer.
- 1-24: multiple bad answers, or emotional/off-topic/volunteering answers to simple questions.

The full analysis must cover:
1) Top 5 risky moments: exact Q/A quotes, the risk label, and a safer rewrite.
2) 3 patterns to fix.
3) 3 short rules to follow next time.
4) 5 drill questions based on the risks you actually saw, each with a grade and rewrite. End with: "What are your 3 danger topics for the next depo?"
When the score is 0, keep the analysis short."""

SCORE_OUTPUT_CONTRACT = """

OUTPUT CONTRACT (mandatory, overrides any conflicting formatting instruction above):
Respond with exactly one JSON object and nothing else. No markdown fences, no text before or after it.
The object MUST have these fields:
- "score": integer 0-100 for the whole conversation
- "score_reason": string explaining the score
- "turn_scores": array with exactly one object per "A:" line, in transcript order. Pair every A: line with the Q: line immediately before it.
  Each item: {"question": "exact Q text", "response": "exact A text", "score": 0-100, "score_reason": "why this rating", "improvement": "what to do better"}
  Use [] only when the transcript has no A: lines.
- "full_analysis": string with the complete written analysis (markdown allowed inside the string). Do not repeat score or score_reason in it."""

TURN_SCORES_ONLY_PROMPT = """You are a deposition conversation rater. Rate every deponent answer in the transcript.
Respond with exactly one JSON object and nothing else: {{"turn_scores": [...]}}.
"turn_scores" MUST contain exactly {answer_count} items, one per "A:" line, in transcript order. An empty array is NOT allowed.
Pair every A: line with the Q: line immediately before it.
Each item: {{"question": "exact Q text", "response": "exact A text", "score": 0-100, "score_reason": "why this rating", "improvement": "what to do better"}}"""


def get_default_score_prompt() -> str:
    return DEFAULT_SCORE_PROMPT


def build_score_system_prompt(custom_instructions: str | None) -> str:
    policy = (custom_instructions or "").strip() or DEFAULT_SCORE_PROMPT
    return policy + SCORE_OUTPUT_CONTRACT


def build_score_user_prompt(qa_text: str, answer_count: int) -> str:
    return (
        "Rate this deposition practice conversation "
        "(Q = questioner/attorney, A = deponent/witness).\n"
        f"The transcript contains exactly {answer_count} A: lines. "
        f"\"turn_scores\" MUST contain exactly {answer_count} entries, one per A: line, "
        "in transcript order.\n"
        "Only use score 0 when there are no A: lines or every A: line is just a greeting. "
        "If the Q (coach) labels any answer as RISKY or BAD, the score must be low.\n\n"
        f"Transcript:\n{qa_text}"
    )


def build_turn_scores_system_prompt(answer_count: int) -> str:
    return TURN_SCORES_ONLY_PROMPT.format(answer_count=answer_count)


def build_turn_scores_user_prompt(qa_text: str, answer_count: int) -> str:
    return (
        f"Return exactly {answer_count} turn_scores entries for this transcript. "
        "Do not return an empty array.\n\n"
        f"Transcript:\n{qa_text}"
    )
