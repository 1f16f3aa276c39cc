import json
from types import SimpleNamespace

SAMPLE_FLASHCARDS = [
    {'front_text': 'What is a mitochondrion?', 'back_text': 'The organelle that produces most of the cell\'s ATP.', 'difficulty': 'medium', 'category': 'biology'},
    {'front_text': 'What does ATP stand for?', 'back_text': 'Adenosine triphosphate, the main energy carrier of the cell.', 'difficulty': 'easy', 'category': 'biology'},
    {'front_text': 'Where does glycolysis happen?', 'back_text': 'In the cytoplasm of the cell.', 'difficulty': 'hard', 'category': 'biology'},
]


def flashcards_json(cards=None, fenced=False):
    body = json.dumps({'flashcards': cards if cards is not None else SAMPLE_FLASHCARDS})
    if fenced:
        return f'Here is the result:\n```json\n{body}\n```'
    return body


class FakeProvider:
    """Scripted stand-in for OpenRouterProvider.

    Each call pops the next scripted outcome; exceptions are raised, strings
    returned. The last outcome repeats once the script runs out.
    """

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes) or [flashcards_json()]
        self.calls = []
        self.closed = False

    async def complete(self, messages, model, **params):
        self.calls.append({'messages': messages, 'model': model, 'params': params})
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def close(self):
        self.closed = True


def make_completion(content, prompt_tokens=12, completion_tokens=34):
    message = SimpleNamespace(content=content, role='assistant')
    return SimpleNamespace(
        choices=[SimpleNamespace(message=message)] if content is not None else [],
        usage=SimpleNamespace(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens),
    )


class FakeCompletions:
    def __init__(self, result):
        self.result = result
        self.kwargs = None

    async def create(self, **kwargs):
        self.kwargs = kwargs
        if isinstance(self.result, BaseException):
            raise self.result
        return self.result


class FakeAsyncOpenAI:
    def __init__(self, result):
        self.chat = SimpleNamespace(completions=FakeCompletions(result))
        self.closed = False

    async def close(self):
        self.closed = True
