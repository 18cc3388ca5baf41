"""
prompts.py — Instruction text sent to the text-generation backend.

Two contracts live here. The JSON one is the default: the reducer needs
structured partials to merge windows properly. The numbered-sections one
is what the first version of the tool used (the output pasted straight
into a Notion card); it is kept for people who prefer reading the raw
answer, and normalizer.parse_sections() maps it back onto the record.

The double-brace {{}} in the JSON skeleton is not a typo — it keeps the
template safe for str.format() if anyone ever adds placeholders.
"""

JSON_SYSTEM_PROMPT = """You are an expert in tender documentation and a requirements analyst.
Analyse the WHOLE document, not just parts of it, and extract every meaningful piece of information.

Respond with ONLY one valid JSON object. No markdown fences. No text before or after the JSON.

RULES:
1. Extract ONLY what is explicitly written in the document. NEVER invent names, numbers, dates or links.
2. Every list field must be present; use [] when nothing was found. Use "" for empty text fields.
3. "quote" must be copied verbatim from the document. Omit it rather than paraphrase.
4. "required_improvements" compares the requirements with the product capabilities (if a capability
   reference is provided below): what is already covered, what needs work, what is not feasible as-is.

OUTPUT FORMAT:
{{
  "document_summary": "what the project is, who it is for and why",
  "customer_company": ["customer organisation name as written"],
  "technical_requirements": [{{"description": "...", "quote": "..."}}],
  "functional_requirements": [{{"description": "...", "quote": "..."}}],
  "non_functional_requirements": [{{"description": "...", "quote": "..."}}],
  "infrastructure_requirements": [{{"description": "...", "quote": "..."}}],
  "constraints_and_risks": [{{"description": "...", "quote": "..."}}],
  "required_improvements": [{{"description": "...", "priority": "...", "complexity": "...", "quote": "..."}}],
  "contacts": [{{"name": "...", "role": "...", "email": "...", "phone": "..."}}],
  "required_documents": [{{"document": "document type", "fields": ["field", "..."]}}],
  "links": ["every URL or attached file mentioned"],
  "original_document_link": ""
}}
"""

SECTIONS_SYSTEM_PROMPT = """You are an expert in tender documentation and a requirements analyst.
Analyse the WHOLE document, not just parts of it. Extract all meaningful information and present it
as readable text that can be pasted straight into a workspace card.

STRICTLY use the following sections and headings (1-7) in this order.
Do not use technical formats (JSON, Markdown, markup). Return plain text with "-" lists.
If there is no information for a section, leave that section empty.

1. Project description
Briefly state what the project is, who it is for and its purpose.

2. Document types to process
List the documents or data that need to be processed.

3. Requirements
Present as lists under these groups:
- Technical requirements
- Functional requirements
- Non-functional requirements
- Infrastructure requirements
- Constraints and risks

4. Required improvements
Compare the requirements with the product capabilities (use the capability reference if provided).
State what is already covered, what needs work and what cannot be delivered as-is.

5. Contacts
List everyone named in the document with role, phone and e-mail.

6. Links and files
List every link and attached material mentioned in the document.

7. Original document
Add a note or link to the source document that was uploaded for analysis."""

JSON_WINDOW_SUFFIX = (
    "You are seeing a FRAGMENT of a larger document. Extract only what is explicitly "
    "present in this fragment. Leave fields empty rather than inferring from context "
    "you cannot see. Return the same JSON object shape."
)

SECTIONS_WINDOW_SUFFIX = (
    "You are seeing a FRAGMENT of a larger document. Process only information explicitly "
    "present in the fragment. Return text in the same sections 1-7. No JSON, no Markdown."
)

FINALIZE_SYSTEM_PROMPT = """You are given a JSON object that was merged from analyses of consecutive fragments
of one tender document. Tidy it into the SAME structure:
- merge items that say the same thing in different words, keeping the clearest wording and its quote;
- keep every distinct item; do NOT add information that is not already in the object;
- keep the exact same keys.
Respond with ONLY the JSON object. No markdown fences, no commentary."""

KNOWLEDGE_BASE_DIRECTIVE = (
    "Product capability reference (use ONLY for the required improvements section; "
    "do not invent facts that are not in this reference):"
)


def system_prompt_for(output_format: str) -> str:
    if output_format == "sections":
        return SECTIONS_SYSTEM_PROMPT
    return JSON_SYSTEM_PROMPT.format()


def window_suffix_for(output_format: str) -> str:
    if output_format == "sections":
        return SECTIONS_WINDOW_SUFFIX
    return JSON_WINDOW_SUFFIX
