# tests/property/test_paging_properties.py
"""Property tests for page offsets and cross-version row normalization."""

import math

from hypothesis import given
from hypothesis import strategies as st

from imigrate.contracts import ApiVersion
from imigrate.engine.extractor import PAGE_SIZE, generate_offsets
from imigrate.imis.normalize import normalize_query_page
from tests.fixtures.imis import v1_query_page, v2_query_page
from tests.property.settings import STANDARD_SETTINGS

column_names = st.text(alphabet=st.characters(categories=["Lu", "Ll", "Nd"]), min_size=1, max_size=20)

rows = st.lists(
    st.dictionaries(column_names, st.one_of(st.none(), st.integers(), st.text(max_size=40)), max_size=8),
    max_size=10,
)


class TestOffsetProperties:
    @given(total=st.integers(min_value=0, max_value=1_000_000))
    @STANDARD_SETTINGS
    def test_one_offset_per_page(self, total: int) -> None:
        offsets = generate_offsets(total)

        assert len(offsets) == math.ceil(total / PAGE_SIZE)
        assert offsets == [k * PAGE_SIZE for k in range(len(offsets))]
        assert all(offset < total for offset in offsets)

    @given(total=st.integers(min_value=0, max_value=100_000), page_size=st.integers(min_value=1, max_value=500))
    @STANDARD_SETTINGS
    def test_pages_cover_every_row_once(self, total: int, page_size: int) -> None:
        covered = [index for offset in generate_offsets(total, page_size) for index in range(offset, min(offset + page_size, total))]

        assert covered == list(range(total))


class TestNormalizationProperties:
    @given(rows=rows)
    @STANDARD_SETTINGS
    def test_both_api_generations_agree(self, rows: list[dict[str, object]]) -> None:
        v1 = normalize_query_page(ApiVersion.V1, v1_query_page(rows), "GET /api/iqa")
        v2 = normalize_query_page(ApiVersion.V2, v2_query_page(rows), "GET /api/iqa")

        assert v1.rows == v2.rows == rows
