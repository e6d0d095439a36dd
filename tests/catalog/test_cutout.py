"""Tests for server-side cutouts."""

import logging

import pytest
import requests
from isimip_client.client import ISIMIPClient

from isiclim.catalog.cutout import BoundingBox, CutoutResource, request_cutout
from isiclim.catalog.query import CatalogConfig
from isiclim.errors import CatalogLookupError

from ..fakes import FakeHTTP, FakeISIMIPClient, json_response

FILES_API_URL: str = "https://files.example.org/api/v2"
JOB_URL: str = "https://files.example.org/api/v2/e5a5b6e4/"

QUEUED: dict = {"id": "e5a5b6e4", "status": "queued", "meta": {}, "job_url": JOB_URL}
STARTED: dict = {
    "id": "e5a5b6e4",
    "status": "started",
    "meta": {"created_files": 1, "total_files": 2},
    "job_url": JOB_URL,
}
FINISHED: dict = {
    "id": "e5a5b6e4",
    "status": "finished",
    "meta": {"created_files": 2, "total_files": 2},
    "job_url": JOB_URL,
    "file_name": "cutout.zip",
    "file_url": "https://files.example.org/api/output/cutout.zip",
}


def test_bounding_box_order() -> None:
    """Test that boxes are read as [south, north, west, east] and sent as [west, east, south, north]."""
    bbox = BoundingBox.from_list([-45.1, -41.9, 167.6, 173.6])
    assert bbox == BoundingBox(south=-45.1, north=-41.9, west=167.6, east=173.6)
    assert bbox.as_list() == [167.6, 173.6, -45.1, -41.9]


@pytest.mark.parametrize(
    "bounds",
    [
        [10.0, -10.0, 0.0, 10.0],
        [-95.0, 0.0, 0.0, 10.0],
        [0.0, 91.0, 0.0, 10.0],
    ],
)
def test_bounding_box_invalid_latitudes(bounds: list[float]) -> None:
    """Test that south must not exceed north and latitudes must be valid."""
    with pytest.raises(ValueError):
        BoundingBox.from_list(bounds)


def test_bounding_box_wrong_length() -> None:
    """Test that exactly four bounds are required."""
    with pytest.raises(ValueError):
        BoundingBox.from_list([0.0, 1.0, 2.0])


def test_bounding_box_antimeridian_allowed() -> None:
    """Test that west may be larger than east."""
    bbox = BoundingBox(south=-20.0, north=-10.0, west=170.0, east=-170.0)
    assert bbox.west == 170.0
    assert bbox.east == -170.0


def test_bounding_box_buffered() -> None:
    """Test that buffering widens the box and clamps latitudes."""
    bbox = BoundingBox(south=-89.5, north=10.0, west=0.0, east=10.0).buffered(1.0)
    assert bbox == BoundingBox(south=-90.0, north=11.0, west=-1.0, east=11.0)


def test_request_cutout_polls_until_finished(caplog: pytest.LogCaptureFixture) -> None:
    """Test that the job is submitted once and polled through its URL while queued or started."""
    client = FakeISIMIPClient(cutout_responses=[QUEUED, STARTED, FINISHED])
    bbox = BoundingBox(south=-45.0, north=-42.0, west=167.5, east=173.5)
    with caplog.at_level(logging.INFO, logger="isiclim"):
        resources = request_cutout(client, ["a.nc", "b.nc"], bbox, poll_interval=0)

    assert resources == [
        CutoutResource(
            file_url=FINISHED["file_url"], file_name="cutout.zip", paths=("a.nc", "b.nc")
        )
    ]
    assert client.cutout_calls == [(["a.nc", "b.nc"], [167.5, 173.5, -45.0, -42.0])]
    assert client.job_calls == [JOB_URL, JOB_URL]
    assert "1/2 files prepared" in caplog.text


def test_request_cutout_passes_antimeridian_box_unchanged() -> None:
    """Test that a box crossing the antimeridian is sent as given."""
    client = FakeISIMIPClient(cutout_responses=[FINISHED])
    bbox = BoundingBox(south=-20.0, north=-10.0, west=170.0, east=-170.0)
    request_cutout(client, ["a.nc"], bbox, poll_interval=0)
    assert client.cutout_calls == [(["a.nc"], [170.0, -170.0, -20.0, -10.0])]


def test_request_cutout_batches() -> None:
    """Test that paths are split into jobs of at most batch_size paths."""
    second = dict(FINISHED, file_url="https://files.example.org/api/output/second.zip")
    client = FakeISIMIPClient(cutout_responses=[FINISHED, second])
    bbox = BoundingBox(south=0.0, north=1.0, west=0.0, east=1.0)
    resources = request_cutout(
        client, ["a.nc", "b.nc", "c.nc"], bbox, poll_interval=0, batch_size=2
    )
    assert [call[0] for call in client.cutout_calls] == [["a.nc", "b.nc"], ["c.nc"]]
    assert [r.paths for r in resources] == [("a.nc", "b.nc"), ("c.nc",)]


@pytest.mark.parametrize(
    "response",
    [{"status": "failed"}, {"status": "finished", "file_url": None}],
)
def test_request_cutout_empty_result(response: dict) -> None:
    """Test that a failed or empty job is an empty result rather than an error."""
    client = FakeISIMIPClient(cutout_responses=[response])
    bbox = BoundingBox(south=80.0, north=85.0, west=0.0, east=1.0)
    assert request_cutout(client, ["a.nc"], bbox, poll_interval=0) == []


def test_request_cutout_no_paths() -> None:
    """Test that nothing is requested for an empty list of paths."""
    client = FakeISIMIPClient()
    bbox = BoundingBox(south=0.0, north=1.0, west=0.0, east=1.0)
    assert request_cutout(client, [], bbox) == []
    assert client.cutout_calls == []


@pytest.mark.parametrize(
    "response",
    [
        requests.HTTPError("500 Server Error"),
        RuntimeError("This method is only available in v2 of the Files API."),
        None,
    ],
)
def test_request_cutout_failed_request(response: object) -> None:
    """Test that a failing or empty request is not retried but raised as a lookup error."""
    client = FakeISIMIPClient(cutout_responses=[response, FINISHED])
    bbox = BoundingBox(south=0.0, north=1.0, west=0.0, east=1.0)
    with pytest.raises(CatalogLookupError) as excinfo:
        request_cutout(client, ["a.nc"], bbox, poll_interval=0)
    assert excinfo.value.step == "subset"
    assert excinfo.value.parameters["paths"] == ["a.nc"]
    assert len(client.cutout_calls) == 1


def test_request_cutout_unknown_status() -> None:
    """Test that an unknown job status is raised."""
    client = FakeISIMIPClient(cutout_responses=[{"status": "exploded"}])
    bbox = BoundingBox(south=0.0, north=1.0, west=0.0, east=1.0)
    with pytest.raises(CatalogLookupError):
        request_cutout(client, ["a.nc"], bbox, poll_interval=0)


def test_request_cutout_job_without_url() -> None:
    """Test that a pending job without a URL to poll is raised."""
    client = FakeISIMIPClient(cutout_responses=[{"status": "queued"}])
    bbox = BoundingBox(south=0.0, north=1.0, west=0.0, east=1.0)
    with pytest.raises(CatalogLookupError) as excinfo:
        request_cutout(client, ["a.nc"], bbox, poll_interval=0)
    assert "no URL to poll" in str(excinfo.value)


def test_request_cutout_timeout() -> None:
    """Test that waiting longer than the timeout raises."""
    client = FakeISIMIPClient(cutout_responses=[QUEUED] * 3)
    bbox = BoundingBox(south=0.0, north=1.0, west=0.0, east=1.0)
    with pytest.raises(CatalogLookupError) as excinfo:
        request_cutout(client, ["a.nc"], bbox, poll_interval=0, timeout=-1)
    assert "did not finish" in str(excinfo.value)
    assert len(client.cutout_calls) == 1
    assert client.job_calls == []


def test_request_cutout_with_isimip_client(monkeypatch: pytest.MonkeyPatch) -> None:
    """Test a cutout through the installed ISIMIP client, with only HTTP replaced."""
    http = FakeHTTP(
        post={FILES_API_URL: [json_response(QUEUED)]},
        get={JOB_URL: [json_response(STARTED), json_response(FINISHED)]},
    )
    monkeypatch.setattr(requests, "post", http.post)
    monkeypatch.setattr(requests, "get", http.get)
    client = CatalogConfig(files_api_url=FILES_API_URL).create_client()
    bbox = BoundingBox.from_list([-50.0, -30.0, 145.0, 180.0])

    resources = request_cutout(client, ["a.nc"], bbox, poll_interval=0)

    assert [r.file_url for r in resources] == [FINISHED["file_url"]]
    assert http.posts == [
        (
            FILES_API_URL,
            {
                "paths": ["a.nc"],
                "operations": [
                    {
                        "operation": "cutout_bbox",
                        "bbox": [145.0, 180.0, -50.0, -30.0],
                        "compute_mean": False,
                        "output_csv": False,
                    }
                ],
            },
        )
    ]
    assert [url for url, _ in http.gets] == [JOB_URL, JOB_URL]


def test_request_cutout_with_isimip_client_http_error(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Test that an HTTP error, which the ISIMIP client only logs, is raised as a lookup error."""
    http = FakeHTTP(post={FILES_API_URL: [json_response({"errors": ["bad bbox"]}, 400)]})
    monkeypatch.setattr(requests, "post", http.post)
    client = CatalogConfig(files_api_url=FILES_API_URL).create_client()
    bbox = BoundingBox(south=0.0, north=1.0, west=0.0, east=1.0)
    with pytest.raises(CatalogLookupError) as excinfo:
        request_cutout(client, ["a.nc"], bbox, poll_interval=0)
    assert excinfo.value.step == "subset"


def test_request_cutout_with_files_api_v1_client() -> None:
    """Test that a client set up for version 1 of the files API is refused with a lookup error."""
    client = ISIMIPClient(files_api_version="v1")
    bbox = BoundingBox(south=0.0, north=1.0, west=0.0, east=1.0)
    with pytest.raises(CatalogLookupError) as excinfo:
        request_cutout(client, ["a.nc"], bbox, poll_interval=0)
    assert "v2" in str(excinfo.value)
