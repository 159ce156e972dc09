import asyncio

from conftest import FakeCompletion
from coachcore.errors import CompletionProviderError
from coachcore.services.concepts import ConceptExtractor, empty_extraction
from coachcore.vocabulary import FEELINGS, NEEDS, find_flexible_match


def _feeling(name):
    return next(term for term in FEELINGS if term.name_en == name)


def test_flexible_match_exact_in_either_language():
    assert find_flexible_match("Traurig", FEELINGS) == _feeling("sad")
    assert find_flexible_match("empathy", NEEDS).name_de == "Empathie"


def test_flexible_match_containment_and_parts():
    assert find_flexible_match("sadness", FEELINGS) == _feeling("sad")
    assert find_flexible_match("alone", FEELINGS) == _feeling("lonely, alone")
    assert find_flexible_match("müde", FEELINGS) == _feeling("exhausted, tired")


def test_flexible_match_rejects_unknown_terms():
    assert find_flexible_match("purple", FEELINGS) is None
    assert find_flexible_match("   ", FEELINGS) is None


def test_extract_keeps_only_vocabulary_terms():
    completion = FakeCompletion([{
        "observation": " He left without saying goodbye ",
        "feelings": ["sadness", "purple", "sad", 7],
        "needs": ["Verbindung"],
        "request": "",
    }])
    result = asyncio.run(ConceptExtractor(completion).extract("He left and I feel sad"))

    assert result == {
        "observation": "He left without saying goodbye",
        "feelings": ["sad"],
        "needs": ["connection"],
        "request": None,
    }
    assert completion.calls[0]["temperature"] == 0.1


def test_extract_returns_names_in_locale():
    completion = FakeCompletion(['{"observation": "", "feelings": ["sad"], "needs": ["rest"], "request": "Can we talk?"}'])
    result = asyncio.run(ConceptExtractor(completion).extract("Ich bin traurig", locale="de"))

    assert result["feelings"] == ["traurig"]
    assert result["needs"] == ["Erholung, Ruhe"]
    assert result["request"] == "Can we talk?"


def test_extract_failure_returns_empty_result():
    failing = ConceptExtractor(FakeCompletion([CompletionProviderError("down")]))
    assert asyncio.run(failing.extract("I feel sad")) == empty_extraction()

    garbled = ConceptExtractor(FakeCompletion(["not json"]))
    assert asyncio.run(garbled.extract("I feel sad")) == empty_extraction()


def test_extract_skips_blank_message():
    completion = FakeCompletion()
    assert asyncio.run(ConceptExtractor(completion).extract("   ")) == empty_extraction()
    assert completion.calls == []
