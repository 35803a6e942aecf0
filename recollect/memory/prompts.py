"""Prompt templates for the LLM-backed steps of retrieval and consolidation."""

from __future__ import annotations

INTENT_PROMPT = """Classify this request from a debt-collection agent looking for memories.

Request: {query}
Context: {context}

Return JSON:
{{"type": "simple" | "complex" | "multi_step",
  "intent": "<one sentence describing what the agent needs>",
  "complexity": <0.0-1.0>,
  "requiredInformation": ["<item>", ...]}}

simple = one lookup answers it; complex = several facets; multi_step = the
answer depends on intermediate findings."""

DECOMPOSE_PROMPT = """Split this memory request into independent search queries.

Request: {query}
Intent: {intent}
Required information: {required}

Return JSON: {{"subtasks": ["<search query>", ...]}} with at most {max_subtasks} entries."""

RERANK_PROMPT = """Rank these memories by how useful they are for the request.

Request: {query}

Candidates (similarity score in brackets):
{candidates}

Return JSON: {{"rankings": [<candidate number>, ...]}} best first, using the
numbers shown above."""

RECOMMENDATIONS_PROMPT = """You advise a {agent_type} collection agent.

Request: {query}

Similar past cases:
{cases}

Known strategies:
{strategies}

Give 2-4 short, concrete, compliant recommendations for the next interaction.
Return JSON: {{"recommendations": ["<recommendation>", ...]}}"""

EVALUATION_PROMPT = """Grade this draft response from a collection agent.

Request: {query}
Draft response:
{response}

Memory context the agent had:
{context}

Judge accuracy, relevance, completeness, and regulatory compliance (FDCPA-style
rules: no threats, no harassment, no misrepresentation).

Return JSON:
{{"accuracy": true|false, "relevance": true|false, "completeness": true|false,
  "compliance": true|false, "overallScore": <0.0-1.0>,
  "issues": ["<issue>", ...], "needsRefinement": true|false}}"""

SESSION_ANALYSIS_PROMPT = """Analyze this finished {agent_type} collection conversation.

Customer risk: {customer_risk}
Transcript:
{transcript}

Return JSON:
{{"outcome": {{"success": true|false, "paymentReceived": true|false,
              "amount": <number or null>, "nextAction": "<string or null>"}},
  "sentiment": "positive" | "neutral" | "negative",
  "tags": ["<short tag>", ...]}}"""

STRATEGY_PROMPT = """This {agent_type} conversation with a {customer_risk}-risk customer succeeded.
Extract the reusable tactic behind it.

Transcript:
{transcript}

Return JSON:
{{"title": "<short name>", "description": "<one sentence>",
  "conditions": ["<when it applies>", ...], "tactics": ["<step>", ...]}}"""

PATTERN_PROMPT = """Review these collection interaction summaries.

{summaries}

Identify recurring patterns and what to change.
Return JSON: {{"patterns": ["<pattern>", ...], "recommendations": ["<change>", ...]}}"""
