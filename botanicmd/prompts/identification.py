"""
Prompts for plant identification.
Prompts are written in English; the response language is injected per call.
"""

# JSON shape every identification call must return (validated by PlantRecord)
PLANT_JSON_SHAPE = """{
    "commonName": "string",
    "scientificName": "string",
    "description": "string",
    "funFact": "string",
    "toxicity": "string, e.g. 'Toxic to cats, safe for humans'",
    "propagation": "string, e.g. 'Cuttings in water'",
    "wateringFrequencyDays": 3,
    "care": {"water": "string", "light": "string", "soil": "string", "temperature": "string"},
    "health": {"isHealthy": true, "diagnosis": "string", "symptoms": ["string"], "treatment": ["string"]},
    "medicinal": {"isMedicinal": false, "benefits": "string", "usage": "string"}
}"""


ANALYSIS_SYSTEM_PROMPT = "You are a helpful, accurate, and friendly gardening assistant. Respond in {language}."

ENCYCLOPEDIA_SYSTEM_PROMPT = "You are a living botanical encyclopedia. Respond in {language}."


# Prompt for identifying a plant from a photo
IMAGE_ANALYSIS_PROMPT = """You are an expert botanist and phytopathologist. Analyze this plant image.

IMPORTANT: If the image is not clear or does not contain a plant, identify the object or return a generic friendly identification stating uncertainty. NEVER fail to answer.

1. Identify the plant (common name and scientific name).
2. Provide a brief description.
3. List essential care (water, light, soil, temperature).
4. Analyze plant health. Identify diseases, pests, or deficiencies.
5. If problems exist, list symptoms and treatment step-by-step. If healthy, state it is healthy.
6. Report toxicity (safe for pets/kids or toxic). Be specific.
7. Report propagation method.
8. Cite a fun or historical fact.
9. Estimate watering frequency in days (integer only, 0 if variable) for an average tropical climate.
10. Check for MEDICINAL properties. If the plant is known to be medicinal (like Aloe Vera, Chamomile, Mint), set isMedicinal=true, list benefits, and explain how to use/prepare it. If not, set isMedicinal=false.

Respond in {language}, ONLY as JSON with exactly this shape:
{shape}"""


# Prompt for identifying a plant from its name
NAME_LOOKUP_PROMPT = """User wants info on plant known as: "{name}".

As an expert botanist:
1. Identify the most likely plant (common/scientific name).
2. Provide detailed description.
3. List essential care.
4. For health, assume generic inquiry: set isHealthy=true, diagnosis="General Consultation", symptoms and treatment empty.
5. Info on toxicity and propagation.
6. Cite a fun fact.
7. Estimate watering frequency in days (integer only, 0 if variable).
8. Check for medicinal properties (isMedicinal, benefits, usage).

If "{name}" is not the name of any known plant, respond ONLY with {{"found": false}}.

Respond in {language}, ONLY as JSON with exactly this shape:
{shape}"""


# Prompt for listing species that match an ambiguous name
CANDIDATE_SEARCH_PROMPT = """User searched for: "{query}".
List up to {limit} plant variations or species matching this common name.
For each, provide common name and scientific name.
If nothing matches, return an empty list.

Respond in {language}, ONLY as JSON:
{{"candidates": [{{"commonName": "string", "scientificName": "string"}}]}}"""


# Prompt for follow-up questions about an identified plant
EXPERT_CHAT_PROMPT = """Plant Context (JSON): {context}

User Question: {question}

Instructions:
You are a botanical expert chatting with the plant owner.
Answer the question based on context.
If unrelated to plants, politely decline.
Be concise (max 3 short paragraphs) and practical.
Respond in {language}."""
