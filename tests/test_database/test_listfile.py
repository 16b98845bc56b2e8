"""Tests for the CSV listfile."""

from pathlib import Path
from unittest.mock import MagicMock, patch

import httpx
import pytest

from casc_source.core.cache import DiskCache
from casc_source.core.errors import ConfigFetchError, DecodeError
from casc_source.database.listfile import LISTFILE_CACHE_NAME, CSVListfile, normalize_path

LISTFILE = (
    "1;Interface/Icons/INV_Misc_QuestionMark.blp\n"
    "2;World\\Maps\\Azeroth\\Azeroth.wdt\n"
    "not-a-number;broken.txt\n"
    "no separator\n"
    "3;Sound/Music/Title.mp3\n"
)


class TestCSVListfile:
    """Test listfile loading and lookups."""

    def test_normalize_path(self):
        assert normalize_path(" World\\Maps\\Test.WDT ") == "world/maps/test.wdt"

    def test_load_local_file(self, listfile_path):
        listfile = CSVListfile(str(listfile_path(LISTFILE)))

        assert listfile.load_listfile("b0") == 3
        assert listfile.get_by_filename("interface/icons/inv_misc_questionmark.blp") == 1
        assert listfile.get_by_filename("WORLD/MAPS/AZEROTH/AZEROTH.WDT") == 2
        assert listfile.get_by_id(3) == "Sound/Music/Title.mp3"
        assert listfile.get_by_filename("missing.txt") is None

    def test_filters_by_root_entries(self, listfile_path):
        listfile = CSVListfile(str(listfile_path(LISTFILE)))

        assert listfile.load_listfile("b0", root_entries={1, 3, 99}) == 2
        assert listfile.get_by_id(2) is None
        assert len(listfile) == 2

    def test_cached_per_build(self, listfile_path, temp_dir: Path):
        """The first load stores the CSV; later loads of the build read the cache."""
        source = listfile_path(LISTFILE)
        cache = DiskCache(temp_dir / "cache")

        CSVListfile(str(source)).load_listfile("b0", cache=cache)
        source.unlink()

        reloaded = CSVListfile(str(source))
        assert reloaded.load_listfile("b0", cache=cache) == 3
        assert cache.read_build_file("b0", LISTFILE_CACHE_NAME).decode() == LISTFILE

    def test_download(self):
        response = MagicMock()
        response.content = b"10;a/b.txt\n"
        response.raise_for_status.return_value = None

        with patch("casc_source.database.listfile.httpx.Client") as mock_client:
            mock_client.return_value.__enter__.return_value.get.return_value = response
            listfile = CSVListfile("https://listfile.example/community-listfile.csv")

            assert listfile.load_listfile("b0") == 1

        mock_client.return_value.__enter__.return_value.get.assert_called_once_with(
            "https://listfile.example/community-listfile.csv"
        )
        assert listfile.get_by_filename("A/B.txt") == 10

    def test_download_http_error(self):
        request = httpx.Request("GET", "https://listfile.example/community-listfile.csv")
        response = MagicMock()
        response.raise_for_status.side_effect = httpx.HTTPStatusError(
            "404", request=request, response=httpx.Response(404, request=request)
        )

        with patch("casc_source.database.listfile.httpx.Client") as mock_client:
            mock_client.return_value.__enter__.return_value.get.return_value = response

            with pytest.raises(ConfigFetchError) as exc_info:
                CSVListfile("https://listfile.example/community-listfile.csv").load_listfile("b0")

        assert exc_info.value.status_code == 404

    def test_missing_local_file(self, temp_dir: Path):
        with pytest.raises(ConfigFetchError, match="Cannot read listfile"):
            CSVListfile(str(temp_dir / "missing.csv")).load_listfile("b0")

    def test_invalid_utf8(self, temp_dir: Path):
        path = temp_dir / "listfile.csv"
        path.write_bytes(b"1;\xff\xfe.blp\n")

        with pytest.raises(DecodeError, match="UTF-8"):
            CSVListfile(str(path)).load_listfile("b0")
