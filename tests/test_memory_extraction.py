import asyncio

from conftest import FakeCompletion
from coachcore.errors import CompletionProviderError
from coachcore.services.memory_extraction import MEMORY_EXTRACTION_SCHEMA, MemoryExtractor, to_fact

TRANSCRIPT = [
    {"role": "user", "content": "Please remember that my partner Sam loves bears."},
    {"role": "model", "content": "I will keep that in mind."},
    {"role": "user", "content": "Honesty matters a lot to me."},
]


def test_extract_maps_memories_to_facts():
    completion = FakeCompletion([{
        "memories": [
            {
                "aspect_type": "relationship",
                "key": "Partner",
                "value": "My partner Sam loves bears",
                "confidence": "certain",
                "person_name": "Sam",
            },
            {
                "aspect_type": "value",
                "key": "Honesty",
                "value": " I value honesty ",
                "confidence": "likely",
                "person_name": "",
            },
        ],
    }])

    facts = asyncio.run(MemoryExtractor(completion).extract(TRANSCRIPT))

    assert facts == [
        {
            "text": "My partner Sam loves bears",
            "key": "Partner",
            "confidence": "high",
            "category": None,
            "person_name": "Sam",
        },
        {
            "text": "I value honesty",
            "key": "Honesty",
            "confidence": "medium",
            "category": "core_identity",
            "person_name": None,
        },
    ]
    call = completion.calls[0]
    assert call["temperature"] == 0.3
    assert call["output_schema"] == MEMORY_EXTRACTION_SCHEMA
    assert "first-person" in call["system_instruction"]
    assert "assistant: I will keep that in mind." in call["turns"][0].content


def test_extract_uses_german_instruction():
    completion = FakeCompletion([{"memories": []}])
    asyncio.run(MemoryExtractor(completion).extract(TRANSCRIPT, locale="de"))

    assert "Ich-Perspektive" in completion.calls[0]["system_instruction"]


def test_extract_accepts_fenced_array():
    completion = FakeCompletion([
        '```json\n[{"aspectType": "emotion", "key": "Stress", "value": "I get anxious before exams", '
        '"confidence": "speculative", "personName": ""}]\n```'
    ])

    facts = asyncio.run(MemoryExtractor(completion).extract(TRANSCRIPT))

    assert facts == [{
        "text": "I get anxious before exams",
        "key": "Stress",
        "confidence": "low",
        "category": "patterns",
        "person_name": None,
    }]


def test_extract_failures_yield_no_facts():
    assert asyncio.run(MemoryExtractor(FakeCompletion([CompletionProviderError("down")])).extract(TRANSCRIPT)) == []
    assert asyncio.run(MemoryExtractor(FakeCompletion(["not json"])).extract(TRANSCRIPT)) == []
    assert asyncio.run(MemoryExtractor(FakeCompletion([{"memories": "none"}])).extract(TRANSCRIPT)) == []


def test_empty_transcript_skips_completion():
    completion = FakeCompletion([{"memories": []}])
    extractor = MemoryExtractor(completion)

    assert asyncio.run(extractor.extract([])) == []
    assert asyncio.run(extractor.extract([{"role": "user", "content": "   "}])) == []
    assert completion.calls == []


def test_extract_drops_unusable_items_and_caps_count():
    items = [{"aspect_type": "identity", "key": f"k{idx}", "value": f"I like thing {idx}", "confidence": "likely",
              "person_name": ""} for idx in range(4)]
    completion = FakeCompletion([{"memories": [{"value": ""}, "text", *items]}])

    facts = asyncio.run(MemoryExtractor(completion, max_facts=2).extract(TRANSCRIPT))

    assert [fact["text"] for fact in facts] == ["I like thing 0", "I like thing 1"]
    assert all(fact["category"] == "preferences" for fact in facts)


def test_unknown_aspect_and_confidence_fall_back():
    fact = to_fact({"aspect_type": "hobby", "value": "I paint", "confidence": "sure"})
    assert fact["category"] is None
    assert fact["confidence"] == "medium"
    assert fact["key"] is None
