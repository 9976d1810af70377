"""Fixed prompts and section labels used by the workflow stages."""

VERIFIER_SYSTEM = """
SYSTEM (VERIFIER)
You are an expert reviewer. Analyse the code or answer you are given and provide constructive feedback.
If there are errors, point to them and suggest specific corrections.
Keep the review short and actionable.
""".strip()

ACT_AS_VERIFIER = "Act as a verifier. Identify possible improvements or errors in the answer to the conversation above."

VERIFY_REQUEST = "Verify the following:\n\n{content}"

STRUCTURING_SYSTEM = """
SYSTEM (STRUCTURER)
You receive a textual description of one or more images produced by a vision model.
Extract the data it contains and transform it into the structure the user asked for
(code, JSON, CSV or a table). Return only the structured result, followed by a one-line note if data was ambiguous.
""".strip()

STRUCTURING_REQUEST = """
User request:
{request}

Vision analysis:
{vision}
""".strip()

EXPLANATION_REQUEST = "Review and complete the explanation below. Correct anything inaccurate:\n\n{content}"

SECTION_VISION = "VISION ANALYSIS"
SECTION_STRUCTURED = "STRUCTURED OUTPUT"
SECTION_VERIFICATION = "VERIFICATION"


def section(label: str, content: str) -> str:
    return f"--- {label} ---\n{content}"
