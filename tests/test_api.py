"""
Tests for the HTTP surface.
"""
import asyncio
import base64

import numpy as np
import pytest

import main
from errors import DecoderUnavailableError
from thermal import ThermalMatrix
from tests.conftest import FakeDecoder

URL = "/extract-thermal"


def test_liveness(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.text == "Thermal Matrix API running"
    assert client.get("/health").json() == {"status": "healthy"}


def test_missing_image(client, decoder):
    response = client.post(URL, data={"x": "0", "y": "0"})
    assert response.status_code == 400
    assert response.json() == {"error": "Missing file 'image'."}
    assert decoder.calls == []


def test_empty_image(client):
    response = client.post(URL, files={"image": ("a.jpg", b"", "image/jpeg")})
    assert response.status_code == 400


# ============ PIXEL MODE ============

def test_pixel_scenario_b(client, upload):
    response = client.post(URL, files=upload, data={"x": "0", "y": "1"})
    assert response.status_code == 200
    body = response.json()
    assert body["temperature"] == 200 * 0.1
    assert body["raw"] == 200
    assert (body["x"], body["y"], body["width"], body["height"], body["scale"]) == (0, 1, 2, 2, 0.1)
    assert body["emissivity"] == 0.95
    assert body["parameters"]["humidity"] == 70.0


def test_pixel_scenario_c_sentinel(client, upload):
    body = client.post(URL, files=upload, data={"x": "1", "y": "0"}).json()
    assert body["temperature"] is None
    assert body["reason"] == "no-data-or-saturated"


def test_pixel_from_query_string(client, upload):
    response = client.post(URL, files=upload, params={"x": "0", "y": "0", "scale": "0.5"})
    assert response.json()["temperature"] == 100 * 0.5


def test_body_overrides_query(client, upload):
    response = client.post(URL, files=upload, params={"x": "1", "y": "1"}, data={"x": "0", "y": "1"})
    assert response.json()["raw"] == 200


def test_emissivity_override(client, upload):
    body = client.post(URL, files=upload, data={"x": "0", "y": "0", "emissivity": "0.5"}).json()
    assert body["emissivity"] == 0.5


@pytest.mark.parametrize("x,y", [("2", "0"), ("0", "2"), ("-1", "0")])
def test_pixel_out_of_bounds(client, upload, x, y):
    response = client.post(URL, files=upload, data={"x": x, "y": y})
    assert response.status_code == 400
    assert response.json() == {"error": "Coordinates out of bounds.", "width": 2, "height": 2}


def test_invalid_coordinates(client, upload, decoder):
    response = client.post(URL, files=upload, data={"x": "left", "y": "1"})
    assert response.status_code == 400
    assert response.json()["error"] == "Invalid coordinates"
    assert decoder.calls == []


@pytest.mark.parametrize("data", [{"scale": "-1"}, {"scale": "-1", "x": "0", "y": "0"}])
def test_scenario_d_bad_scale_rejected_before_decoding(client, upload, decoder, data):
    response = client.post(URL, files=upload, data=data)
    assert response.status_code == 400
    assert response.json()["error"].startswith("Invalid 'scale'")
    assert decoder.calls == []


def test_overflowing_scale_rejected(client, upload, decoder):
    response = client.post(URL, files=upload, data={"scale": "1e308"})
    assert response.status_code == 400
    assert response.json()["error"].startswith("Invalid 'scale'")
    assert "overflows" in response.json()["details"]
    assert decoder.calls == []


# ============ STATS MODE ============

def test_stats_scenario_a(client, upload):
    response = client.post(URL, files=upload)
    assert response.status_code == 200
    body = response.json()
    assert (body["width"], body["height"]) == (2, 2)
    assert body["parameters"]["emissivity"] == 0.95
    stats = body["stats"]
    assert stats["samples"] == 2
    assert stats["minC"] == pytest.approx(10.0)
    assert stats["maxC"] == pytest.approx(20.0)
    assert stats["avgC"] == pytest.approx(15.0)
    assert stats["method"] == "plain"
    assert stats["minLocation"] == {"raw": 100, "x": 0, "y": 0}
    assert stats["maxLocation"] == {"raw": 200, "x": 0, "y": 1}
    assert body["sampleTempsC"] == pytest.approx([10.0, 20.0])
    assert "temperatures_base64" not in body
    assert "temperaturesC" not in body


def test_stats_scenario_e_float32(client, upload):
    body = client.post(URL, files=upload, data={"include_raw_data": "true", "format": "float32"}).json()
    assert body["temperatures_format"] == "float32"
    assert body["temperatures_unit"] == "C"
    values = np.frombuffer(base64.b64decode(body["temperatures_base64"]), dtype="<f4")
    assert values.tolist() == pytest.approx([10.0, 0.0, 20.0, 6553.5])


def test_stats_uint16_base64(client, upload):
    body = client.post(URL, files=upload, data={"include_raw_data": "TRUE"}).json()
    assert body["temperatures_format"] == "uint16"
    assert body["temperatures_scale"] == 0.1
    raw = np.frombuffer(base64.b64decode(body["temperatures_base64"]), dtype="<u2")
    assert raw.tolist() == [100, 0, 200, 65535]


def test_stats_array_encoding(client, upload):
    body = client.post(URL, files=upload, data={"include_raw_data": "true", "raw_encoding": "array"}).json()
    assert body["temperaturesC"] == pytest.approx([10.0, 0.0, 20.0, 6553.5])


def test_stats_trimmed_method(client, upload):
    body = client.post(URL, files=upload, data={"stats": "trimmed"}).json()
    assert body["stats"]["method"] == "trimmed"
    assert body["stats"]["minC"] <= body["stats"]["avgC"] <= body["stats"]["maxC"]


def test_stats_default_method_from_settings(make_client, decoder, upload):
    client = make_client(decoder, stats_method="trimmed")
    assert client.post(URL, files=upload).json()["stats"]["method"] == "trimmed"


def test_preview_limit_from_settings(make_client, upload):
    matrix = ThermalMatrix.from_samples(10, 10, range(1, 101))
    client = make_client(FakeDecoder(matrix), preview_limit=5)
    assert len(client.post(URL, files=upload).json()["sampleTempsC"]) == 5


def test_stats_zero_width_matrix(make_client, upload):
    client = make_client(FakeDecoder(ThermalMatrix.from_samples(0, 0, [100, 200])))
    response = client.post(URL, files=upload)
    assert response.status_code == 200
    stats = response.json()["stats"]
    assert stats["samples"] == 2
    assert stats["minLocation"] == {"raw": 100, "x": None, "y": None}
    assert stats["maxLocation"] == {"raw": 200, "x": None, "y": None}


def test_binary_transport(client, upload):
    response = client.post(URL, files=upload, data={"transport": "binary"})
    assert response.status_code == 200
    assert response.headers["content-type"] == "application/octet-stream"
    assert response.headers["x-width"] == "2"
    assert response.headers["x-height"] == "2"
    assert response.headers["x-scale"] == "0.1"
    assert response.headers["x-format"] == "uint16"
    assert response.headers["x-unit"] == "C"
    assert np.frombuffer(response.content, dtype="<u2").tolist() == [100, 0, 200, 65535]


def test_binary_transport_float32(client, upload):
    response = client.post(URL, files=upload, data={"transport": "binary", "format": "float32"})
    assert response.headers["x-format"] == "float32"
    assert np.frombuffer(response.content, dtype="<f4").tolist() == pytest.approx([10.0, 0.0, 20.0, 6553.5])


def test_responses_are_deterministic(client, upload):
    data = {"include_raw_data": "true", "format": "float32"}
    first = client.post(URL, files=upload, data=data)
    second = client.post(URL, files=upload, data=data)
    assert first.content == second.content


# ============ SERVER ERRORS ============

def test_no_valid_samples(make_client, upload):
    client = make_client(FakeDecoder(ThermalMatrix.from_samples(2, 1, [0, 65535])))
    response = client.post(URL, files=upload)
    assert response.status_code == 500
    assert "error" in response.json()


def test_empty_decode(make_client, upload):
    client = make_client(FakeDecoder(ThermalMatrix.from_samples(0, 0, [])))
    response = client.post(URL, files=upload)
    assert response.status_code == 500
    assert response.json()["error"].startswith("No thermal data returned")


def test_decoder_unavailable(make_client, upload):
    error = DecoderUnavailableError(details="libdirp.so: cannot open shared object file")
    client = make_client(FakeDecoder(error=error))
    response = client.post(URL, files=upload)
    assert response.status_code == 500
    assert response.json() == {
        "error": "Failed to load the thermal decoder on the server.",
        "details": "libdirp.so: cannot open shared object file",
    }


def test_unhandled_decoder_failure(make_client, upload):
    client = make_client(FakeDecoder(error=RuntimeError("dirp_create_from_rjpeg failed: -7")))
    response = client.post(URL, files=upload)
    assert response.status_code == 500
    assert response.json() == {"error": "Processing failed", "details": "dirp_create_from_rjpeg failed: -7"}


# ============ APP WIRING ============

class FakeForm:
    def __init__(self):
        self.closed = False

    async def close(self):
        self.closed = True


class FakeRequest:
    def __init__(self, form):
        self._form = form

    async def form(self):
        return self._form


def test_read_form_closes_after_response():
    form = FakeForm()

    async def run():
        forms = main.read_form(FakeRequest(form))
        assert await forms.__anext__() is form
        assert not form.closed
        with pytest.raises(StopAsyncIteration):
            await forms.__anext__()

    asyncio.run(run())
    assert form.closed


def test_read_form_closes_when_handler_fails():
    form = FakeForm()

    async def run():
        forms = main.read_form(FakeRequest(form))
        await forms.__anext__()
        with pytest.raises(RuntimeError):
            await forms.athrow(RuntimeError("decode failed"))

    asyncio.run(run())
    assert form.closed


def test_import_builds_no_app():
    # uvicorn builds it through create_app (--factory)
    assert not hasattr(main, "app")
