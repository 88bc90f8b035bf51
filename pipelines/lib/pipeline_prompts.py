JSON_ONLY_GUARD = (
    "STRICT JSON MODE.\n"
    "You are a backend formatting component.\n\n"
    "You must output exactly one JSON object and nothing else.\n"
    "The first character must be {.\n"
    "The last character must be }.\n\n"
    "Forbidden:\n"
    "- any explanation outside the schema fields\n"
    "- any markdown or code fences\n"
    "- any prefix or suffix text\n"
    "- any extra keys not in schema\n\n"
    "If unsure, output a valid JSON object with empty values allowed by schema.\n"
    "Never ask questions. Never refuse. Never echo the user query."
)

DEFAULT_INTENT_SYSTEM = (
    "You analyze a natural-language question about a table and describe what must be computed. "
    "Use ONLY column names from the provided header list, spelled exactly as listed. "
    "columns_needed: the columns the computation reads. "
    "filters: row conditions from the question, each {column, operator, value}; "
    "operator is one of equals, contains, greater, less, greaterOrEqual, lessOrEqual, "
    "dateGreater, dateLess, dateGreaterOrEqual, dateLessOrEqual; value is always a string. "
    "aggregation: one of sum, average, max, min, count, variance, stddev, median, percentage. "
    "group_by: a column name or null. "
    "requires_calculation: true when the answer needs more than a single direct aggregate. "
    "calculation_steps: short imperative steps describing the computation. "
    "requires_full_dataset: true when the denominator or comparison base must cover ALL rows "
    "(percentages, proportions, ratios, shares of total, comparisons between groups). "
    "For percentage questions the filters describe the numerator condition only."
)

DEFAULT_STRATEGY_SYSTEM = (
    "You write ONE pandas expression that answers a question about a DataFrame named df. "
    "The expression is evaluated with df, pd, np and these helpers in scope:\n"
    "- match_rows(df, filters) -> boolean Series; filters is a list of "
    "{'column': ..., 'operator': ..., 'value': ...} dicts (same operators as the request).\n"
    "- aggregate(series, kind) -> float; kind is sum, average, max, min, count, variance, "
    "stddev, stddev_population, median or pNN for a percentile.\n"
    "- percentile(values, p) -> float with linear interpolation.\n"
    "Rules:\n"
    "- formula must evaluate to a single scalar (number or short text), never a DataFrame or Series.\n"
    "- If you need several statements, assign the final scalar to a variable named result.\n"
    "- NO imports, NO lambda, NO function or class definitions, NO file or network access.\n"
    "- Use column names exactly as listed; access them as df['Column Name'].\n"
    "- PERCENTAGE RULE: compute the share over ALL rows of df and multiply by 100, "
    "e.g. match_rows(df, [...]).mean() * 100. Return 0 when df is empty.\n"
    "- When the request says filters were already applied to the data, do NOT filter again.\n"
    "- helper_columns are optional per-row derived columns added to df before the formula runs. "
    "Each helper formula is evaluated once per data row with the integer variable row bound to the "
    "0-based row position (use df.at[row, 'Column']), or once for the whole frame if it does not use row "
    "(a Series aligned with df or a scalar).\n"
    "Return JSON with keys: approach, formula, helper_columns, explanation."
)

DEFAULT_REFINE_SYSTEM = (
    "A pandas expression failed while answering a question about a DataFrame named df. "
    "Return a corrected expression that fixes the reported error. Keep the same helpers and rules: "
    "single scalar result, no imports, no lambda, column names exactly as listed, "
    "percentages computed over all rows of df and multiplied by 100. "
    "Return JSON with keys: formula, explanation."
)

REFINE_ERROR_HINTS = {
    "#DIV/0!": "Division by zero: guard the denominator (return 0 when it is 0 or when df is empty).",
    "#REF!": "Reference error: a column name or row position does not exist; use only listed columns and valid positions.",
    "#NAME?": "Unknown name or attribute: use only df, pd, np, match_rows, aggregate, percentile and valid pandas methods.",
    "#VALUE!": "Type mismatch: convert text to numbers with pd.to_numeric(..., errors='coerce') before arithmetic.",
    "#N/A": "Empty or missing result: make sure the filter matches rows and fall back to 0 when nothing matches.",
    "#SPILL!": "The result was not a single value: reduce it to one scalar (e.g. .sum(), .mean(), .iloc[0]).",
    "#BLOCKED!": "Forbidden construct: remove imports, lambdas, function definitions and I/O calls.",
    "#SYNTAX!": "Syntax error: return a single valid Python expression or statements ending with result = ...",
    "#TIMEOUT!": "Evaluation took too long: use vectorised pandas operations instead of loops.",
}

FILTER_ITEM_SCHEMA = {
    "type": "object",
    "properties": {
        "column": {"type": "string"},
        "operator": {"type": "string"},
        "value": {"type": "string"},
    },
    "required": ["column", "operator", "value"],
    "additionalProperties": False,
}

INTENT_RESPONSE_SCHEMA = {
    "type": "object",
    "properties": {
        "columns_needed": {"type": "array", "items": {"type": "string"}},
        "filters": {"type": "array", "items": FILTER_ITEM_SCHEMA},
        "aggregation": {"type": "string"},
        "group_by": {"type": ["string", "null"]},
        "requires_calculation": {"type": "boolean"},
        "calculation_steps": {"type": "array", "items": {"type": "string"}},
        "requires_full_dataset": {"type": "boolean"},
    },
    "required": [
        "columns_needed",
        "filters",
        "aggregation",
        "group_by",
        "requires_calculation",
        "calculation_steps",
        "requires_full_dataset",
    ],
    "additionalProperties": False,
}

HELPER_COLUMN_SCHEMA = {
    "type": "object",
    "properties": {
        "name": {"type": "string"},
        "formula": {"type": "string"},
        "purpose": {"type": "string"},
    },
    "required": ["name", "formula", "purpose"],
    "additionalProperties": False,
}

STRATEGY_RESPONSE_SCHEMA = {
    "type": "object",
    "properties": {
        "approach": {"type": "string"},
        "formula": {"type": "string"},
        "helper_columns": {"type": "array", "items": HELPER_COLUMN_SCHEMA},
        "explanation": {"type": "string"},
    },
    "required": ["approach", "formula", "helper_columns", "explanation"],
    "additionalProperties": False,
}

REFINE_RESPONSE_SCHEMA = {
    "type": "object",
    "properties": {
        "formula": {"type": "string"},
        "explanation": {"type": "string"},
    },
    "required": ["formula", "explanation"],
    "additionalProperties": False,
}
