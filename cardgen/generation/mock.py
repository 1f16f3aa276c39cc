"""Deterministic stand-in for the AI provider.

Used when the service starts without an API key and after the orchestrator
degrades. Output depends only on the input text.
"""
import hashlib
import uuid
from typing import List

from cardgen.generation.schema import Difficulty, FlashcardCandidate

MOCK_MODEL = 'mock-model'
MIN_MOCK_CANDIDATES = 3
MAX_CONFIDENCE = 0.99

MOCK_POOL = [
    {
        'front_text': 'What is the capital of France?',
        'back_text': 'Paris is the capital and largest city of France, located in the north-central part of the country.',
        'confidence': 0.95,
        'difficulty': Difficulty.EASY,
        'category': 'geography',
    },
    {
        'front_text': 'Define photosynthesis',
        'back_text': 'Photosynthesis is the process by which plants use sunlight, water, and carbon dioxide to produce glucose and oxygen.',
        'confidence': 0.92,
        'difficulty': Difficulty.MEDIUM,
        'category': 'biology',
    },
    {
        'front_text': 'What is the Pythagorean theorem?',
        'back_text': 'The Pythagorean theorem states that in a right triangle, the square of the hypotenuse equals the sum of squares of the other two sides: a² + b² = c²',
        'confidence': 0.88,
        'difficulty': Difficulty.MEDIUM,
        'category': 'mathematics',
    },
    {
        'front_text': 'Who wrote Romeo and Juliet?',
        'back_text': 'William Shakespeare wrote Romeo and Juliet, one of his most famous tragedies, written in the early part of his career.',
        'confidence': 0.97,
        'difficulty': Difficulty.EASY,
        'category': 'literature',
    },
    {
        'front_text': 'What is DNA?',
        'back_text': 'DNA (Deoxyribonucleic acid) is the hereditary material that contains genetic instructions for the development and function of living organisms.',
        'confidence': 0.93,
        'difficulty': Difficulty.MEDIUM,
        'category': 'biology',
    },
]


class MockGenerator:

    def __init__(self, pool=None):
        self.pool = pool or MOCK_POOL

    def generate(self, text: str) -> List[FlashcardCandidate]:
        digest = hashlib.sha256(text.strip().lower().encode('utf-8')).digest()
        seed = digest[-1]
        count = min(len(self.pool), MIN_MOCK_CANDIDATES + seed % 3)

        candidates = []
        for i in range(count):
            item = self.pool[(seed + i) % len(self.pool)]
            # one hash byte per item gives a variance in [-0.05, 0.05]
            variance = (digest[i] / 255.0) * 0.1 - 0.05
            confidence = round(min(MAX_CONFIDENCE, max(0.0, item['confidence'] + variance)), 4)
            candidates.append(FlashcardCandidate(
                id=str(uuid.uuid4()),
                front_text=item['front_text'],
                back_text=item['back_text'],
                confidence=confidence,
                difficulty=item['difficulty'],
                category=item['category'],
            ))
        return candidates
