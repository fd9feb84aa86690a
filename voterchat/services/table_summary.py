import json
import logging
from typing import Any, Dict, List, Optional

import openai
from pydantic import ValidationError

from voterchat.errors import IngestError
from voterchat.models.schemas import TableInfo
from voterchat.services.voter_schema import sanitize_identifier, unique_table_name

logger = logging.getLogger(__name__)

PROMPT_ROWS = 20

SYSTEM_PROMPT = (
    "You are a helpful assistant that will provide ONLY VALID JSON responses. "
    "JSON must be parseable. DO NOT use Markdown"
)

SUMMARY_PROMPT = """
Given a CSV file, provide a summary in the following JSON format ONLY. Do not provide an explanation.
- Include a summary of the row data as a field called summary to describe the contents of the row data.
- IMPORTANT: The summary needs to be human meaningful that includes the human readable table name with a minimum of 20 TOKENS and a maximum of 30 tokens!
- The table name should consist of the filename that has semantic meaning to voter registration. Omit any text that appears to be coded from the table name. E.g. for file name tbl_prod_GABU202012_new_records.csv, omit the "tbl_prod_GABU202012", and use "new_records" as part of the name to keep its semantic meaning.
- The table name should be in lowercase, use underscores to separate words, and must not include any special characters.
- Do NOT output a generic table name (e.g., table, my_table, voter_data).
- For each column, include the PostgreSQL type and description relative to the data in the small sample.
- Do NOT make the table name one of the following: [{excluded}].
- Use Postgres timestamp type for both Date and DateTime values.
- Only use VARCHAR and TIMESTAMP Postgres COLUMN Types. NO CHAR TYPES!
- Use the CSV header names, unchanged, as the column keys.
- Prepend voter_ to the table name for easy identification.

Output Format:
{{
  "file_name": "file name",
  "table_name": "voter_the_table_name",
  "summary": "The Summary",
  "columns": {{
    "column1": {{"type": "type of column1", "description": "description of column1"}},
    "column2": {{"type": "type of column2", "description": "description of column2"}}
  }}
}}

FILE_NAME: {file_name}

TABULAR_DATA:
{rows}
"""


def strip_fences(content: str) -> str:
    content = content.strip()
    if content.startswith("```"):
        content = content.split("\n", 1)[1] if "\n" in content else ""
        if content.rstrip().endswith("```"):
            content = content.rstrip()[:-3]
    return content.strip()


def parse_table_info(content: str, exclude_table_names: Optional[List[str]] = None) -> TableInfo:
    """Validate a model response and normalise its table name"""
    try:
        table_info = TableInfo.model_validate(json.loads(strip_fences(content)))
    except (ValueError, ValidationError) as e:
        raise IngestError(f"Table summary response is not a valid table description: {e}") from e

    name = sanitize_identifier(table_info.table_name)
    if not name.startswith("voter_"):
        name = sanitize_identifier("voter_" + name)

    table_info.table_name = unique_table_name(name, set(exclude_table_names or []))
    return table_info


class TableSummaryService:
    """Asks a chat model to name and describe a delimited extract"""

    def __init__(self, api_key: Optional[str] = None, model: str = "gpt-3.5-turbo",
                 base_url: Optional[str] = None, client=None):
        self.model = model
        self.client = client or openai.AsyncOpenAI(api_key=api_key, base_url=base_url)

    async def generate(self, file_name: str, rows: List[Dict[str, Any]],
                       exclude_table_names: Optional[List[str]] = None) -> TableInfo:
        prompt = SUMMARY_PROMPT.format(
            excluded=", ".join(exclude_table_names or []),
            file_name=file_name,
            rows=json.dumps(rows[:PROMPT_ROWS]),
        )
        logger.info("Requesting table summary for %s", file_name)
        response = await self.client.chat.completions.create(
            model=self.model,
            temperature=0,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
        )
        content = response.choices[0].message.content or ""
        table_info = parse_table_info(content, exclude_table_names)
        if not table_info.file_name:
            table_info.file_name = file_name
        return table_info
