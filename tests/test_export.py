"""Tests for the flat CSV export."""

from regwatch.ingest.export import EXPORT_COLUMNS, flatten, read_export, to_dataframe, write_export
from regwatch.ingest.registry import Jurisdiction


def _registry():
    return {
        "CO": Jurisdiction.from_urls(
            "CO",
            news=["https://co.example/news"],
            regulation=["https://co.example/rules"],
            rss=["https://co.example/feed.xml"],
            agency="https://sbg.colorado.gov/marijuana-home",
            agency_name="Colorado Marijuana Enforcement Division",
        ),
        "AR": Jurisdiction.from_urls("AR"),
        "US": Jurisdiction.from_urls("US", regulation=["https://federal.example/cfr"]),
    }


class TestFlatten:
    def test_one_row_per_source(self):
        rows = flatten(_registry(), poller_id="cannabis-hemp-poller")

        assert len(rows) == 4
        assert [r["url"] for r in rows] == [
            "https://co.example/feed.xml",
            "https://co.example/news",
            "https://co.example/rules",
            "https://federal.example/cfr",
        ]
        assert all(r["poller"] == "cannabis-hemp-poller" for r in rows)

    def test_row_fields(self):
        rss, news, regulation, _ = flatten(_registry())

        assert rss["sourceType"] == "rss"
        assert rss["category"] == "news"
        assert news["sourceType"] == "webpage"
        assert regulation["category"] == "regulation"
        assert regulation["agencyName"] == "Colorado Marijuana Enforcement Division"

    def test_missing_agency_is_blank(self):
        rows = flatten(_registry())

        assert rows[-1]["agency"] == ""
        assert rows[-1]["agencyName"] == ""

    def test_empty_jurisdictions_have_no_rows(self):
        assert "AR" not in {r["state"] for r in flatten(_registry())}


class TestWriteExport:
    def test_columns_and_rows(self, tmp_path):
        path = tmp_path / "exports" / "all-poller-sources.csv"

        rows = write_export(_registry(), path)

        df = read_export(path)
        assert rows == 4
        assert list(df.columns) == EXPORT_COLUMNS
        assert df.iloc[-1]["agency"] == ""

    def test_empty_registry_writes_header(self, tmp_path):
        path = tmp_path / "sources.csv"

        rows = write_export({}, path)

        assert rows == 0
        assert path.read_text().strip() == ",".join(EXPORT_COLUMNS)

    def test_overwrites_previous_export(self, tmp_path):
        path = tmp_path / "sources.csv"
        write_export(_registry(), path)

        write_export({"US": _registry()["US"]}, path)

        assert len(read_export(path)) == 1
        assert not (tmp_path / "sources.csv.tmp").exists()

    def test_dataframe_matches_flatten(self):
        df = to_dataframe(_registry())

        assert df.to_dict("records") == flatten(_registry())
