"""
Tagging prompt and example schema for the analysis chatflow.

The chatflow accepts an overrideConfig with a system prompt and an
exampleJson schema. For taxonomy-driven runs both are generated from the tags
table so the model can only answer with known tag slugs.
"""

import json
from collections import OrderedDict
from pathlib import Path
from typing import Any, Dict, List, Union

from .config import ConfigurationError

GENERAL_CATEGORY = "General Tags"

TAGGING_SYSTEM_PROMPT_HEADER = """You are a call analysis assistant for a point-of-sale systems provider serving grocery stores, retail stores and restaurants.

Analyze the following call transcript and categorize it with the most relevant tags. When analyzing the transcript:

- **Ignore any segments that are hold music or automated system messages.**
- **Only focus on portions of the transcript where a human agent interacts with the caller.**
- **Select only the most relevant tags that accurately describe the content of the call.**
- **You may select multiple tags if they apply to different aspects of the call.**

Select tags from the following categories:

"""

TAGGING_SYSTEM_PROMPT_FOOTER = """
Respond in JSON format with an array of tag slugs. Select only the tags that directly apply to the content of the call.
"""


def group_tags_by_parent(tags: List[Dict[str, Any]]) -> "OrderedDict[str, List[Dict[str, Any]]]":
    """Group tags under their parent's label, top-level tags under GENERAL_CATEGORY."""
    groups: "OrderedDict[str, List[Dict[str, Any]]]" = OrderedDict()
    for tag in tags:
        category = None
        if tag.get("parent_id") is not None:
            category = tag.get("parent_label") or tag.get("parent_slug")
        groups.setdefault(category or GENERAL_CATEGORY, []).append(tag)
    return groups


def build_tagging_prompt(tags: List[Dict[str, Any]]) -> str:
    """
    Render the tagging system prompt for a tag taxonomy.

    Args:
        tags: Rows from TagStore.fetch_tags()

    Returns:
        Prompt with one "## Category" section per parent and one
        "- `slug`: label - description" line per tag
    """
    sections = []
    for category, category_tags in group_tags_by_parent(tags).items():
        lines = [f"## {category}"]
        for tag in category_tags:
            line = f"- `{tag['slug']}`: {tag.get('label') or tag['slug']}"
            if tag.get("description"):
                line += f" - {tag['description']}"
            lines.append(line)
        sections.append("\n".join(lines) + "\n")
    return TAGGING_SYSTEM_PROMPT_HEADER + "\n".join(sections) + TAGGING_SYSTEM_PROMPT_FOOTER


def build_tag_schema(tags: List[Dict[str, Any]]) -> str:
    """Schema string restricting the answer to at least one known tag slug."""
    slugs = ",\n      ".join(json.dumps(tag["slug"]) for tag in tags)
    return f"z.object({{tags: z.array(z.enum([{slugs}])).min(1)}})"


def load_example_schema(path: Union[str, Path]) -> Any:
    """
    Load an exampleJson schema from a JSON file.

    Raises:
        ConfigurationError: if the file cannot be read or is not valid JSON
    """
    schema_path = Path(path)
    try:
        with open(schema_path, encoding="utf-8") as f:
            return json.load(f)
    except OSError as e:
        raise ConfigurationError(f"Cannot read example schema {schema_path}: {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Example schema {schema_path} is not valid JSON: {e}") from e
