"""Prompt templates for concept extraction, bridging and consolidation."""

NODE_COLORS = ["#FFCBE1", "#D6E5BD", "#F9E1A8", "#BCD8EC", "#DCCCEC", "#FFDAB4"]

EXTRACTION_PROMPT = f"""Extract key concepts and their relationships from the following text chunks.
Each chunk is annotated with its source file and page number in a [Source: ...] header.
For each concept, include the "sources" array listing which source files and pages it appears in.

Return ONLY a JSON object with this exact structure (no markdown, no code fences):
{{
  "concepts": [
    {{
      "label": "concept name",
      "description": "1-2 sentence summary",
      "category": "theory|person|event|term|process|principle|method",
      "importance": "high|medium|low",
      "color": "#HEX",
      "sources": [{{"file": "filename.pdf", "page": 3}}]
    }}
  ],
  "relationships": [
    {{
      "from": "concept label (exact match)",
      "to": "concept label (exact match)",
      "label": "relationship type (causes, part-of, contrasts, supports, leads-to, example-of, etc.)",
      "weight": 0.5
    }}
  ]
}}

Guidelines:
- Extract 5-15 concepts per batch
- Focus on the most important concepts, theories, and connections
- Use the same language as the source material
- Weight should be 0-1 (1 = strongest relationship)
- Each concept needs a clear, concise description
- Only create relationships between concepts you extracted
- sources: list ONLY the files/pages where the concept actually appears
- Assign a color to each concept from ONLY these 6 colors: {", ".join(NODE_COLORS)}
- Use the SAME color for thematically related concepts so each cluster is visually distinct"""

CONNECTION_PROMPT = """You are given two sets of concepts from a knowledge graph:
- EXISTING: concepts already in the graph
- NEW: concepts just extracted from new material

Identify relationships between NEW concepts and EXISTING concepts.
Return ONLY a JSON object (no markdown, no code fences):
{
  "relationships": [
    {
      "from": "concept label (exact match from either set)",
      "to": "concept label (exact match from either set)",
      "label": "relationship type",
      "weight": 0.5
    }
  ]
}

Only create cross-set relationships (between a new and existing concept).
Do NOT duplicate relationships that may already exist."""

CONSOLIDATION_PROMPT = f"""You are given a knowledge graph with many nodes. Consolidate it:
1. Merge near-duplicate concepts (keep the best description)
2. Remove trivial or overly generic concepts
3. Keep the most meaningful relationships
4. Aim for a clean, navigable graph
5. Assign colors ONLY from this palette: {", ".join(NODE_COLORS)}. Use the same color for thematically related concepts.

Return ONLY a JSON object (no markdown, no code fences):
{{
  "concepts": [{{ "label": "...", "description": "...", "category": "...", "importance": "high|medium|low", "color": "#HEX" }}],
  "relationships": [{{ "from": "...", "to": "...", "label": "...", "weight": 0.5 }}]
}}"""

JSON_ONLY_SUFFIX = "\n\nReturn only the JSON object."
