"""Prompt profiles for the orchestration patterns and the research pipeline roles."""

from .schemas import CrewAgent

# Phased-graph workflow, executed strictly in this order.
GRAPH_PHASES = ("analyze", "plan", "execute", "observe", "synthesize")

PHASE_INSTRUCTIONS = {
    "analyze": "Analyze the user request. Identify key entities, requirements, and constraints.",
    "plan": "Create a step-by-step plan to address the request. List specific actions needed.",
    "execute": "Execute the plan. Gather information and perform the required actions.",
    "observe": "Observe the results. Check for errors, inconsistencies, or missing information.",
    "synthesize": "Synthesize all findings into a comprehensive, well-structured response.",
}


def phase_system(phase: str) -> str:
    instruction = PHASE_INSTRUCTIONS.get(phase, "Process the current step in the workflow.")
    return f"You are in the {phase.upper()} phase of a research workflow. {instruction}"


DEFAULT_CREW = (
    CrewAgent(
        role="Researcher",
        goal="Gather comprehensive information from multiple sources",
        backstory="Expert researcher with experience in data collection and verification",
    ),
    CrewAgent(
        role="Analyst",
        goal="Analyze data and identify patterns, insights, and contradictions",
        backstory="Senior analyst skilled in critical thinking and data interpretation",
    ),
    CrewAgent(
        role="Writer",
        goal="Produce clear, accurate, and well-structured reports",
        backstory="Professional technical writer with expertise in research communication",
    ),
)


def crew_system(agent: CrewAgent, context: str) -> str:
    return (
        f"You are a {agent.role}.\n"
        f"Goal: {agent.goal}\n"
        f"Background: {agent.backstory}\n\n"
        "Previous agent context:\n"
        f"{context or 'You are the first agent in the workflow.'}\n\n"
        "Complete your task based on the user's request."
    )


PLANNER_SYSTEM = """
You are a research planner. Given a research query, generate 3-5 specific sub-questions
that would help comprehensively answer the main query.
Return ONLY a JSON object with a "questions" array of strings. No extra text.
""".strip()

VERIFIER_SYSTEM = """
You are a fact verification agent. Analyze the provided sources and identify key claims.
For each claim, determine if it's verified by multiple sources.
Return ONLY a JSON object with a "facts" array containing objects with:
- claim: the factual claim
- verified: boolean
- sources: array of domain names that support this claim
- confidence: 0-1 score
""".strip()

REPORT_GUIDANCE = {
    "research_report": "Write a comprehensive, well-structured research report with an executive summary, key findings and conclusions.",
    "resource_report": "Write an annotated resource report: list the most useful sources, what each covers and how reliable it is.",
    "outline_report": "Write a detailed outline (headings and bullet points) that a full report could follow.",
    "custom_report": "Write the report in whatever structure best answers the query.",
}


def writer_system(report_type: str) -> str:
    guidance = REPORT_GUIDANCE.get(report_type, REPORT_GUIDANCE["research_report"])
    return (
        f"You are a research report writer creating a {report_type}.\n"
        f"{guidance}\n"
        "Cite sources inline as [n] using the numbered source list, and end with a Sources section.\n"
        "Include key findings and actionable insights.\n"
        "Format in clean Markdown with proper headings and sections."
    )
