"""
Tests for the sentence-greedy chunker.

Sentences used below are exactly 50 characters (12 estimated tokens), which
keeps the boundary arithmetic easy to follow.
"""

import pytest

from sitechat.chunker import (
    Chunker,
    estimate_tokens,
    find_section_heading,
    split_into_sentences,
    synthesize_heading,
)
from sitechat.models import PageMetadata, PageSection, make_chunk_id


def sentence(i: int) -> str:
    return f"Sentence number {i:02d} talks about topic {i:02d} in detail."


def page_text(count: int) -> str:
    return " ".join(sentence(i) for i in range(count))


@pytest.fixture
def metadata():
    return PageMetadata(url="https://example.com/features", title="Features", content_hash="abc123")


class TestHelpers:
    def test_sentence_fixture_size(self):
        assert len(sentence(0)) == 50
        assert estimate_tokens(sentence(0)) == 12

    def test_estimate_tokens(self):
        assert estimate_tokens("") == 0
        assert estimate_tokens("abcdefgh") == 2
        assert estimate_tokens("abc") == 0

    def test_split_into_sentences(self):
        text = "First one. Second one! Third one? Fourth"
        assert split_into_sentences(text) == ["First one.", "Second one!", "Third one?", "Fourth"]

    def test_decimal_is_not_a_boundary(self):
        assert split_into_sentences("Output grew 1.8x this year. Nice.") == [
            "Output grew 1.8x this year.",
            "Nice.",
        ]

    def test_synthesize_heading_short(self):
        assert synthesize_heading("Fast onboarding. More text follows.") == "Fast onboarding"

    def test_synthesize_heading_truncates(self):
        heading = synthesize_heading("word " * 40 + "end.")
        assert heading.endswith("...")
        assert len(heading) <= 103


class TestSectionHeadings:
    def test_best_overlap_wins(self):
        sections = [
            PageSection(heading="Pricing", text="Plans start at ten dollars per seat"),
            PageSection(heading="Inspections", text="Mobile inspections sync offline results to the cloud"),
        ]
        chunk = "Mobile inspections capture results offline and sync later"
        assert find_section_heading(chunk, sections) == "Inspections"

    def test_first_section_wins_ties(self):
        sections = [
            PageSection(heading="Alpha", text="shared vocabulary here"),
            PageSection(heading="Beta", text="shared vocabulary here"),
        ]
        assert find_section_heading("shared vocabulary appears", sections) == "Alpha"

    def test_no_overlap_falls_back_to_first_sentence(self):
        sections = [PageSection(heading="Pricing", text="plans and seats")]
        assert find_section_heading("Weather changes quickly. Carry layers.", sections) == (
            "Weather changes quickly"
        )

    def test_no_sections(self):
        assert find_section_heading("Only text here. More.", []) == "Only text here"


class TestChunking:
    def test_empty_text(self, metadata):
        assert Chunker().chunk_text("   ", metadata) == []

    def test_short_page_is_single_chunk(self, metadata):
        chunks = Chunker(min_chunk_chars=500).chunk_text("Short page about features.", metadata)

        assert len(chunks) == 1
        chunk = chunks[0]
        assert chunk.text == "Short page about features."
        assert chunk.chunk_index == 0
        assert chunk.total_chunks == 1
        assert chunk.id == make_chunk_id(metadata.url, 0)
        assert chunk.content_hash == "abc123"
        assert chunk.title == "Features"
        assert chunk.section_heading == "Short page about features"

    def test_text_of_exact_target_size_is_single_chunk(self, metadata):
        text = page_text(3)
        assert len(text) == 4 * 38

        # the greedy path would drop this text as a short tail
        chunks = Chunker(max_tokens=38, overlap_tokens=0, min_chunk_chars=500).chunk_text(text, metadata)

        assert len(chunks) == 1
        assert chunks[0].text == text

    def test_text_just_over_target_splits(self, metadata):
        # sentence estimates sum to 36 tokens, one sentence past the 35 token budget
        chunks = Chunker(max_tokens=35, overlap_tokens=0, min_chunk_chars=10).chunk_text(page_text(3), metadata)

        assert [c.text for c in chunks] == [" ".join([sentence(0), sentence(1)]), sentence(2)]

    def test_content_hash_computed_when_missing(self):
        meta = PageMetadata(url="https://example.com/a")
        chunks = Chunker().chunk_text("Some text.", meta)
        assert len(chunks[0].content_hash) == 64

    def test_greedy_split_with_overlap(self, metadata):
        chunker = Chunker(max_tokens=100, overlap_tokens=30, min_chunk_chars=50)
        chunks = chunker.chunk_text(page_text(20), metadata)

        # 8 sentences (96 tokens) fill a chunk; two sentences (24 tokens) fit the overlap
        assert len(chunks) == 3
        assert chunks[0].text == " ".join(sentence(i) for i in range(0, 8))
        assert chunks[1].text.startswith(sentence(6))
        assert chunks[1].text == " ".join(sentence(i) for i in range(6, 14))
        assert chunks[2].text == " ".join(sentence(i) for i in range(12, 20))
        assert [c.chunk_index for c in chunks] == [0, 1, 2]
        assert all(c.total_chunks == 3 for c in chunks)

    def test_short_tail_is_dropped(self, metadata):
        chunker = Chunker(max_tokens=100, overlap_tokens=30, min_chunk_chars=200)
        chunks = chunker.chunk_text(page_text(9), metadata)

        # tail = sentences 6..8 = 152 chars < 200
        assert len(chunks) == 1
        assert chunks[0].total_chunks == 1

    def test_zero_overlap(self, metadata):
        chunker = Chunker(max_tokens=100, overlap_tokens=0, min_chunk_chars=50)
        chunks = chunker.chunk_text(page_text(16), metadata)
        assert len(chunks) == 2
        assert chunks[1].text.startswith(sentence(8))

    def test_chunks_respect_size_bound(self, metadata):
        chunker = Chunker(max_tokens=100, overlap_tokens=30, min_chunk_chars=50)
        for chunk in chunker.chunk_text(page_text(40), metadata):
            assert estimate_tokens(chunk.text) <= 100 + 2

    def test_deterministic_ids(self, metadata):
        chunker = Chunker(max_tokens=100, overlap_tokens=30, min_chunk_chars=50)
        first = chunker.chunk_text(page_text(20), metadata)
        second = chunker.chunk_text(page_text(20), metadata)
        assert [c.id for c in first] == [c.id for c in second]
        assert first == second
        assert len({c.id for c in first}) == 3

    def test_section_headings_assigned(self):
        meta = PageMetadata(
            url="https://example.com/trail",
            title="Trail Guide",
            sections=[PageSection(heading="Gear", text="carry water, a map and warm layers")],
        )
        chunks = Chunker().chunk_text("Hikers should carry water and warm layers.", meta)
        assert chunks[0].section_heading == "Gear"

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_tokens": 0},
            {"max_tokens": 100, "overlap_tokens": 100},
            {"max_tokens": 100, "overlap_tokens": -1},
        ],
    )
    def test_invalid_configuration(self, kwargs):
        with pytest.raises(ValueError):
            Chunker(**kwargs)
