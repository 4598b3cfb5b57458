"""
Prompt templates for extraction, dedup arbitration and merging.

Each prompt asks for strict JSON; replies are read with
``llm_client.parse_json_from_response``.
"""

from memory_types import MemoryCategory

_CATEGORY_GUIDE = """| Question | Answer | Category |
|----------|--------|----------|
| Who is the user? | Identity, attributes | profile |
| What does the user prefer? | Preferences, habits | preferences |
| What is this thing? | Person, project, organization | entities |
| What happened? | Decision, milestone | events |
| How was it solved? | Problem + solution | cases |
| What is the process? | Reusable steps | patterns |

- profile: static facts about who the user is ("User is ...")
- preferences: tendencies and habits ("User prefers ...")
- entities: the current state of a lasting thing ("X's state is ...")
- events: something that happened or was decided ("X did / decided ...")
- cases: one concrete problem and how it was solved ("problem -> solution")
- patterns: a reusable process for similar situations

Common confusions:
- "Plan to do X" -> events
- "Project X status: Y" -> entities
- "User prefers X" -> preferences, not profile
- "Hit problem A, fixed with B" -> cases, not events
- "General way to handle problems like A" -> patterns, not cases"""


def build_extraction_prompt(conversation_text: str, user: str) -> str:
    categories = "|".join(item.value for item in MemoryCategory)
    return f"""Analyze the following session and extract memories worth keeping long term.

User: {user}

Target output language: the dominant language of the conversation.

## Recent Conversation
{conversation_text}

# What to keep
- Personalized information specific to this user, not general domain knowledge
- Information that stays useful in future sessions
- Specific, concrete details

# What to drop
- General knowledge
- One-off questions or small talk
- Vague statements without details

# Classification
{_CATEGORY_GUIDE}

# Three levels per memory
- abstract (L0): one-line index text. Mergeable types (profile, preferences,
  entities, patterns) use "[Merge key]: [Description]"; events and cases use a
  specific one-line description.
- overview (L1): structured Markdown summary with headings suited to the category.
- content (L2): full narrative with background and details.

# Output
Return JSON only:
{{
  "memories": [
    {{
      "category": "{categories}",
      "abstract": "...",
      "overview": "...",
      "content": "..."
    }}
  ]
}}

If nothing is worth recording, return {{"memories": []}}.
Aggregate preferences by topic."""


def build_dedup_prompt(
    candidate_abstract: str,
    candidate_overview: str,
    candidate_content: str,
    existing_memories: str,
) -> str:
    return f"""Decide how to handle this candidate memory.

**Candidate Memory**:
Abstract: {candidate_abstract}
Overview: {candidate_overview}
Content: {candidate_content}

**Existing Similar Memories**:
{existing_memories}

Options:
- skip: the candidate duplicates an existing memory
- create: the candidate is new information
- merge: the candidate should be merged into one existing memory

Return JSON only:
{{
  "decision": "skip|create|merge",
  "match_index": 1,
  "reason": "why"
}}

For "merge", set "match_index" to the 1-based number of the memory to merge with."""


def build_merge_prompt(
    existing_abstract: str,
    existing_overview: str,
    existing_content: str,
    new_abstract: str,
    new_overview: str,
    new_content: str,
    category: str,
) -> str:
    return f"""Merge the following memories into one coherent record with all three levels.

**Category**: {category}

**Existing Memory:**
Abstract: {existing_abstract}
Overview:
{existing_overview}
Content:
{existing_content}

**New Information:**
Abstract: {new_abstract}
Overview:
{new_overview}
Content:
{new_content}

Requirements:
- Remove duplicated information
- Prefer the most recent details when they conflict
- Keep a coherent narrative
- Keep code identifiers, URIs and model names verbatim

Return JSON only:
{{
  "abstract": "merged one-line abstract",
  "overview": "merged structured Markdown overview",
  "content": "merged full content"
}}"""
