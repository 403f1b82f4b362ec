"""
Prompt templates for the analysis phases.

Templates are plain text with literal placeholders:
    {products_context} {clients_context} {message_text}   (phase 1, single call)
    {analysis_text} {products_context} {clients_context}  (phase 2)
    {json_text}                                           (phase 3)

Substitution is a single regex pass over known names, never str.format:
templates embed JSON examples full of braces, and user overrides are free text.
"""

import re
from typing import Optional

from magic_order.models import CatalogSnapshot


# ============================================
# PHASE 1: FREE-TEXT BREAKDOWN PER CLIENT
# ============================================

STEP_ONE_PROMPT = """Analyze this message from one or more customers and extract the orders per customer. Each line or paragraph may hold a different order from a different customer. Messages are usually informal Spanish (WhatsApp style).

CONTEXT (products and clients that exist in the database):

PRODUCTS:
{products_context}

CLIENTS:
{clients_context}

IMPORTANT INSTRUCTIONS:
1. Read the whole message and split the orders by customer.
2. Identify which customer places each order.
3. For each customer, list the requested products with their quantities.
4. If a name does not match any known client, say whether it could be a new client.
5. Detect products, variants and quantities. For example "3M" means 3 diapers size M.
6. If a product or variant is NOT in the catalog, say there is a doubt.
7. If the product or variant IS in the catalog, do NOT raise doubts. "Tres leche" means 3 units of milk unless a dessert called "Tres Leches" exists in the catalog.
8. Pay attention to informal wording, abbreviations and mixed information.

MESSAGE TO ANALYZE:
"{message_text}"

Return your analysis as structured text like this example:

---
Client: Martín
Order: 5 chickens, 3 diapers size M, 3 milks
Notes: All clear

Client: Eli
Order: 5 chickens, 1 mozzarella cheese
Notes: All clear
---"""


# ============================================
# PHASE 2: JSON STRUCTURING
# ============================================

JSON_SCHEMA_EXAMPLE = """[
  {
    "client": {
      "id": "client ID or null",
      "name": "Client name",
      "matchConfidence": "high|medium|low|unknown"
    },
    "items": [
      {
        "product": {
          "id": "product ID or null",
          "name": "Product name"
        },
        "quantity": 1,
        "variant": {
          "id": "variant ID or null",
          "name": "Variant name"
        },
        "status": "confirmed|ambiguous",
        "alternatives": [],
        "notes": "Notes or doubts about this item"
      }
    ],
    "unmatchedText": "Text not associated to any client or product"
  }
]"""

STEP_TWO_PROMPT = """Now convert the following order analysis into structured JSON:

PREVIOUS ANALYSIS:
{analysis_text}

CONTEXT (products and clients that exist in the database):

PRODUCTS:
{products_context}

CLIENTS:
{clients_context}

IMPORTANT INSTRUCTIONS:
1. Return ONLY a valid JSON array. No explanations, comments or any other text.
2. The answer MUST be a JSON array that follows exactly the schema below.
3. Do NOT use markdown fences like ``` or any other wrapper around the JSON.
4. ALWAYS produce one entry for every identified client.
5. Identify the client of each order. Use the catalog ID only when the match is reliable and set "matchConfidence" to "high" in that case.
6. Detect the requested products with their quantities. Quantities are numbers greater than zero.
7. If an item is doubtful or ambiguous, set "status": "ambiguous" and explain briefly in "notes".
8. If a product has variants and the message does not say which one, mark the item as "ambiguous".
9. All clarifications or doubts go in the "notes" field.
10. The JSON must be perfectly formed: no missing commas, unclosed braces or incomplete values.

Return only a JSON array with this structure:

""" + JSON_SCHEMA_EXAMPLE


# ============================================
# PHASE 3: SYNTACTIC JSON REPAIR
# ============================================

STEP_THREE_PROMPT = """Validate and fix the following JSON so it is well formed and matches the expected structure:

JSON TO VALIDATE:
{json_text}

IMPORTANT INSTRUCTIONS:
1. Check the JSON syntax: missing quotes, commas, braces or brackets.
2. Make sure every field has the right type:
   - IDs are strings or null
   - "quantity" values are numbers
   - "matchConfidence" is one of: "high", "medium", "low", "unknown"
   - "status" is one of: "confirmed", "ambiguous"
3. Do NOT change the structure of the JSON and do NOT add new fields.
4. Do NOT add comments or explanations, return ONLY the fixed JSON.
5. If the JSON is already well formed, return it unchanged.
6. Keep empty arrays as they are (e.g. "alternatives": []).
7. The JSON MUST be a valid array that starts with [ and ends with ].

Return EXCLUSIVELY the fixed JSON, with no explanations or extra markers."""


# ============================================
# SINGLE-CALL ANALYSIS (raw message straight to JSON)
# ============================================

SINGLE_CALL_PROMPT = """Analyze the following message and detect the orders it requests. The message may be informal and hold several orders from different customers.

CONTEXT (products and clients that exist in the database):

PRODUCTS:
{products_context}

CLIENTS:
{clients_context}

MESSAGE TO ANALYZE:
"{message_text}"

Return a JSON array with the exact structure below. It must contain every identified order, grouped by client. If the same client places several orders, group them in a single entry.

IMPORTANT:
- The result MUST be a valid, well-formed JSON array.
- Do NOT include explanations, markdown fences or anything outside the JSON.
- If a client or product cannot be identified, set its ID to null.
- If an item is unclear, set its status to "ambiguous".
- For clients that are not clearly recognized use matchConfidence "low" or "unknown".

""" + JSON_SCHEMA_EXAMPLE


# ============================================
# CONTEXT RENDERING
# ============================================

def choose_template(override: Optional[str], default: str) -> str:
    """A blank override falls back to the built-in template."""
    if override is None or not override.strip():
        return default
    return override


def build_products_context(catalog: CatalogSnapshot) -> str:
    lines = []
    for product in catalog.products:
        if product.variants:
            variants_text = "Variants: " + ", ".join(
                f"{variant.name} (ID: {variant.id})" for variant in product.variants
            )
        else:
            variants_text = "No variants"
        lines.append(f"- {product.name} (ID: {product.id}), Price: {product.price}. {variants_text}")
    return "\n".join(lines)


def build_clients_context(catalog: CatalogSnapshot) -> str:
    lines = []
    for client in catalog.clients:
        phone = f", Phone: {client.phone}" if client.phone else ""
        lines.append(f"- {client.name} (ID: {client.id}){phone}")
    return "\n".join(lines)


RE_PLACEHOLDER = re.compile(r"\{(\w+)\}")


def render(template: str, **values: str) -> str:
    """
    Replace `{name}` placeholders in a single pass.

    Unknown names (such as the JSON braces in the schema example) are left
    alone, and text coming from a value is never expanded again.
    """
    def substitute(match: "re.Match") -> str:
        name = match.group(1)
        return values[name] if name in values else match.group(0)

    return RE_PLACEHOLDER.sub(substitute, template)
