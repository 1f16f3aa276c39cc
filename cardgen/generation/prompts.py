from cardgen.generation.schema import FlashcardGenerationRequest

TOPIC_MAX_LENGTH = 200
CONTEXT_MAX_LENGTH = 1000
ELLIPSIS = '...'
_SENTENCE_ENDINGS = ('.', '!', '?', '\n')

FLASHCARD_SYSTEM_PROMPT = (
    "You are an expert educational content creator specializing in flashcard generation. "
    "Your task is to create high-quality, educational flashcards based on the given topic and requirements.\n\n"
    "Instructions:\n"
    "1. Generate the exact number of flashcards requested (1-10)\n"
    "2. Each flashcard must have a clear, concise question (front_text) and accurate answer (back_text)\n"
    "3. Vary question types: definitions, explanations, examples, comparisons, problem-solving\n"
    "4. Ensure questions are specific, unambiguous, and test understanding\n"
    "5. Keep front_text under 200 characters and back_text under 500 characters\n"
    "6. Match the requested difficulty level appropriately\n"
    "7. Use the specified category if provided\n"
    "8. Focus on key concepts, important facts, and fundamental understanding\n\n"
    "Response Format:\n"
    "You must respond with valid JSON that exactly matches this schema:\n"
    "- front_text: The question or prompt (max 200 chars)\n"
    "- back_text: The answer or explanation (max 500 chars)\n"
    "- difficulty: Must be \"easy\", \"medium\", or \"hard\"\n"
    "- category: Category for organization\n\n"
    "Output only the JSON object. Do not add commentary outside it."
)


def truncate_text(text: str, max_length: int) -> str:
    """Shorten ``text`` to at most ``max_length`` characters, ellipsis included.

    Prefers cutting after a sentence ending found in the last 30% of the
    window, then after a space in the last 20%, then a hard cut.
    """
    if len(text) <= max_length:
        return text
    window = max_length - len(ELLIPSIS)
    head = text[:window]

    sentence_cut = max(head.rfind(c) for c in _SENTENCE_ENDINGS)
    if sentence_cut > window * 0.7:
        return head[:sentence_cut + 1].rstrip() + ELLIPSIS

    word_cut = head.rfind(' ')
    if word_cut > window * 0.8:
        return head[:word_cut].rstrip() + ELLIPSIS

    return head + ELLIPSIS


def derive_topic(text: str) -> str:
    return truncate_text(text.strip(), TOPIC_MAX_LENGTH)


def build_system_prompt(request: FlashcardGenerationRequest) -> str:
    prompt = FLASHCARD_SYSTEM_PROMPT
    if request.category:
        prompt += f'\n\nCategory: {request.category}'
    prompt += f'\n\nDifficulty Level: {request.difficulty_level.value}'
    prompt += f'\nNumber of Flashcards: {request.count}'
    return prompt


def build_user_prompt(request: FlashcardGenerationRequest) -> str:
    difficulty = request.difficulty_level.value
    prompt = f'Generate {request.count} flashcards about: {request.topic}'
    if request.additional_context:
        prompt += f'\n\nAdditional Context: {request.additional_context}'
    prompt += (
        f'\n\nPlease ensure the difficulty level matches "{difficulty}" and respond with valid JSON in this exact format:\n'
        '{\n'
        '  "flashcards": [\n'
        '    {\n'
        '      "front_text": "question",\n'
        '      "back_text": "answer",\n'
        f'      "difficulty": "{difficulty}",\n'
        '      "category": "category_name"\n'
        '    }\n'
        '  ]\n'
        '}'
    )
    return prompt


def build_messages(request: FlashcardGenerationRequest):
    return [
        {'role': 'system', 'content': build_system_prompt(request)},
        {'role': 'user', 'content': build_user_prompt(request)},
    ]
