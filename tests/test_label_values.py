"""Label values fan-out: merging, ordering and tolerance to broken datasources."""

import asyncio
import logging

import httpx
import pytest

from datasources import Datasource
from durations import MINUTE
from label_values import aggregate_label_values


def values_handler(*values, status="success"):
    def handler(request):
        return httpx.Response(200, json={"status": status, "data": list(values)})
    return handler


class TestMerge:

    def test_values_are_merged_sorted_and_deduplicated(self, fake_datasources, make_proxy):
        proxy = make_proxy([
            Datasource(url=fake_datasources.add("ds1", values_handler("foo", "a")), resolution=MINUTE),
            Datasource(url=fake_datasources.add("ds2", values_handler("foo", "b")), resolution=MINUTE),
        ])

        resp = proxy.get("/api/v1/label/job/values")

        assert resp.status_code == 200
        assert resp.headers["content-type"] == "application/json"
        assert resp.text == '{"status":"success","data":["a","b","foo"]}'

    def test_label_path_is_passed_through(self, fake_datasources, make_proxy):
        def echo(name):
            def handler(request):
                return httpx.Response(200, json={"status": "success", "data": ["foo", f"{name}/{request.url.path}"]})
            return handler

        proxy = make_proxy([
            Datasource(url=fake_datasources.add("ds1", echo("ds1")), resolution=MINUTE),
            Datasource(url=fake_datasources.add("ds2", echo("ds2")), resolution=MINUTE),
        ])

        resp = proxy.get("/api/v1/label/foo/values")

        assert resp.json() == {
            "status": "success",
            "data": ["ds1//api/v1/label/foo/values", "ds2//api/v1/label/foo/values", "foo"],
        }
        assert all(request.method == "GET" for request in fake_datasources.calls)

    def test_every_datasource_is_asked(self, fake_datasources, make_proxy):
        proxy = make_proxy([
            Datasource(url=fake_datasources.add(f"ds{i}", values_handler(f"v{i}")), resolution=MINUTE)
            for i in range(5)
        ])

        resp = proxy.get("/api/v1/label/instance/values")

        assert sorted(fake_datasources.hosts_called()) == [f"ds{i}" for i in range(5)]
        assert resp.json()["data"] == ["v0", "v1", "v2", "v3", "v4"]

    def test_dedup_is_case_sensitive(self, fake_datasources, make_proxy):
        proxy = make_proxy([
            Datasource(url=fake_datasources.add("ds1", values_handler("Foo", "foo")), resolution=MINUTE),
            Datasource(url=fake_datasources.add("ds2", values_handler("foo", "FOO")), resolution=MINUTE),
        ])

        resp = proxy.get("/api/v1/label/job/values")

        assert resp.json()["data"] == ["FOO", "Foo", "foo"]

    def test_path_under_url_prefix(self, fake_datasources, make_proxy):
        fake_datasources.add("ds1", values_handler("x"))
        proxy = make_proxy([Datasource(url="http://ds1/prom/", resolution=MINUTE)])

        proxy.get("/api/v1/label/job/values")

        assert fake_datasources.calls[0].url.path == "/prom/api/v1/label/job/values"


class TestBrokenDatasources:

    def test_timeout_contributes_nothing(self, fake_datasources, make_proxy):
        async def slow(request):
            await asyncio.sleep(5)
            return httpx.Response(200, json={"status": "success", "data": ["late"]})

        proxy = make_proxy(
            [
                Datasource(url=fake_datasources.add("ds1", values_handler("foo")), resolution=MINUTE),
                Datasource(url=fake_datasources.add("ds2", slow), resolution=MINUTE),
            ],
            label_values_timeout=0.1,
        )

        resp = proxy.get("/api/v1/label/job/values")

        assert resp.status_code == 200
        assert resp.json() == {"status": "success", "data": ["foo"]}

    @pytest.mark.parametrize("handler", [
        values_handler("bar", status="error"),
        lambda request: httpx.Response(500, json={"status": "success", "data": ["bar"]}),
        lambda request: httpx.Response(200, text="<html>not json</html>"),
        lambda request: httpx.Response(200, json={"status": "success", "data": [1, 2]}),
        lambda request: httpx.Response(200, json=["bar"]),
    ])
    def test_bad_answer_contributes_nothing(self, fake_datasources, make_proxy, handler):
        proxy = make_proxy([
            Datasource(url=fake_datasources.add("ds1", values_handler("foo")), resolution=MINUTE),
            Datasource(url=fake_datasources.add("ds2", handler), resolution=MINUTE),
        ])

        resp = proxy.get("/api/v1/label/job/values")

        assert resp.status_code == 200
        assert resp.json() == {"status": "success", "data": ["foo"]}

    @pytest.mark.parametrize("error", [
        httpx.InvalidURL("Invalid non-printable ASCII character in URL"),
        httpx.StreamConsumed(),
        httpx.ReadError("connection reset"),
    ])
    def test_client_error_contributes_nothing(self, fake_datasources, make_proxy, error):
        def fail(request):
            raise error

        proxy = make_proxy([
            Datasource(url=fake_datasources.add("ds1", fail), resolution=MINUTE),
            Datasource(url=fake_datasources.add("ds2", values_handler("foo")), resolution=MINUTE),
        ])

        resp = proxy.get("/api/v1/label/job/values")

        assert resp.status_code == 200
        assert resp.json() == {"status": "success", "data": ["foo"]}

    def test_unreachable_datasource_is_logged(self, fake_datasources, make_proxy, caplog):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        proxy = make_proxy([
            Datasource(url=fake_datasources.add("ds1", refuse), resolution=MINUTE),
            Datasource(url=fake_datasources.add("ds2", values_handler("foo")), resolution=MINUTE),
        ])

        with caplog.at_level(logging.WARNING, logger="label_values"):
            resp = proxy.get("/api/v1/label/job/values")

        assert resp.json() == {"status": "success", "data": ["foo"]}
        assert any("http://ds1/api/v1/label/job/values" in record.getMessage() for record in caplog.records)

    def test_all_failing_still_succeeds(self, fake_datasources, make_proxy):
        proxy = make_proxy([
            Datasource(url=fake_datasources.add("ds1", lambda request: httpx.Response(503)), resolution=MINUTE),
        ])

        resp = proxy.get("/api/v1/label/job/values")

        assert resp.status_code == 200
        assert resp.text == '{"status":"success","data":[]}'


def test_aggregate_waits_for_every_datasource(fake_datasources):
    async def delayed(delay, value):
        await asyncio.sleep(delay)
        return httpx.Response(200, json={"status": "success", "data": [value]})

    fake_datasources.add("slow", lambda request: delayed(0.05, "z"))
    fake_datasources.add("fast", lambda request: delayed(0, "a"))
    datasources = [
        Datasource(url="http://slow", resolution=MINUTE),
        Datasource(url="http://fast", resolution=MINUTE),
    ]

    async def run():
        async with httpx.AsyncClient(transport=fake_datasources.transport) as client:
            return await aggregate_label_values(client, "/api/v1/label/job/values", datasources, timeout=5)

    assert asyncio.run(run()) == ["a", "z"]
