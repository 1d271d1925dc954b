"""
HTTP API tests using FastAPI's TestClient with the fake engine injected.
"""

import threading
import time
import uuid

import pytest
from fastapi.testclient import TestClient

from facebox.main import create_app

from conftest import FakeFaceEngine, encode_image, make_image


@pytest.fixture
def client(settings, fake_engine):
    app = create_app(settings, fake_engine)
    with TestClient(app) as client:
        yield client


def upload(data: bytes, content_type: str = 'image/png', name: str = 'face.png'):
    return {'image': (name, data, content_type)}


def wait_until(condition, timeout: float = 5.0):
    deadline = time.monotonic() + timeout
    while not condition():
        assert time.monotonic() < deadline, 'condition never became true'
        time.sleep(0.01)


# =============================================================================
# POST /detect
# =============================================================================


class TestDetect:
    def test_multipart_upload(self, client, face_png):
        response = client.post('/detect', files=upload(face_png))
        assert response.status_code == 200

        body = response.json()
        assert isinstance(body, list)
        assert len(body) == 1
        assert set(body[0]) == {'x_min', 'y_min', 'x_max', 'y_max', 'confidence'}
        assert body[0]['x_min'] == pytest.approx(100.0, abs=0.01)
        assert body[0]['y_max'] == pytest.approx(280.0, abs=0.01)

    def test_file_field_alias(self, client, face_png):
        response = client.post('/detect', files={'file': ('face.png', face_png, 'image/png')})
        assert response.status_code == 200
        assert len(response.json()) == 1

    def test_raw_body(self, client, face_png):
        response = client.post(
            '/detect', content=face_png, headers={'Content-Type': 'image/png'}
        )
        assert response.status_code == 200
        assert len(response.json()) == 1

    def test_octet_stream_body(self, client, face_png):
        response = client.post(
            '/detect', content=face_png, headers={'Content-Type': 'application/octet-stream'}
        )
        assert response.status_code == 200

    def test_no_faces_is_empty_list(self, client, blank_png):
        response = client.post('/detect', files=upload(blank_png))
        assert response.status_code == 200
        assert response.json() == []

    def test_jpeg_upload(self, client):
        data = encode_image(make_image(squares=[(100, 80, 300, 280)]), 'JPEG', quality=95)
        response = client.post('/detect', files=upload(data, 'image/jpeg', 'face.jpg'))
        assert response.status_code == 200
        assert len(response.json()) == 1

    def test_confidence_override(self, client, face_png):
        response = client.post('/detect?confidence=0.99999', files=upload(face_png))
        assert response.status_code == 200
        assert response.json() == []

    def test_confidence_out_of_range(self, client, face_png):
        response = client.post('/detect?confidence=1.5', files=upload(face_png))
        assert response.status_code == 422

    def test_headers(self, client, face_png):
        response = client.post(
            '/detect', files=upload(face_png), headers={'X-Request-ID': 'req-123'}
        )
        assert response.headers['X-Request-ID'] == 'req-123'
        assert response.headers['X-Process-Time'].endswith('ms')

    def test_generated_request_id(self, client, face_png):
        response = client.post('/detect', files=upload(face_png))
        assert response.headers['X-Request-ID']


class TestDetectErrors:
    def test_garbage_bytes(self, client):
        response = client.post('/detect', files=upload(b'not an image'))
        assert response.status_code == 400

        body = response.json()
        assert body['error_type'] == 'DecodeError'
        assert body['client_error'] is True
        assert body['retryable'] is False
        assert body['request_id'] == response.headers['X-Request-ID']

    def test_truncated_image(self, client, face_png):
        response = client.post('/detect', files=upload(face_png[: len(face_png) // 3]))
        assert response.status_code == 400

    def test_content_type_mismatch(self, client, face_png):
        response = client.post('/detect', files=upload(face_png, 'image/jpeg', 'face.jpg'))
        assert response.status_code == 400
        assert 'does not match' in response.json()['detail']

    def test_empty_body(self, client):
        response = client.post('/detect', content=b'', headers={'Content-Type': 'image/png'})
        assert response.status_code == 400

    def test_missing_file_field(self, client):
        response = client.post('/detect', data={'other': 'value'}, files={'x': ('a', b'1')})
        assert response.status_code == 400

    def test_too_many_pixels(self, settings, fake_engine):
        settings.max_image_pixels = 1000
        with TestClient(create_app(settings, fake_engine)) as client:
            response = client.post('/detect', files=upload(encode_image(make_image(100, 100))))
        assert response.status_code == 413
        assert response.json()['error_type'] == 'ImageTooLargeError'

    def test_upload_too_large(self, settings, fake_engine):
        settings.max_file_size_mb = 1
        with TestClient(create_app(settings, fake_engine)) as client:
            response = client.post(
                '/detect',
                content=b'\xff\xd8\xff' + b'\x00' * (2 * 1024 * 1024),
                headers={'Content-Type': 'image/jpeg'},
            )
        assert response.status_code == 413

    def test_timeout(self, settings, anchors, face_png):
        settings.request_timeout_ms = 50
        engine = FakeFaceEngine(anchors.priors, delay_s=0.3)
        with TestClient(create_app(settings, engine)) as client:
            response = client.post('/detect', files=upload(face_png))
        assert response.status_code == 504
        assert response.json()['retryable'] is True
        assert response.headers['Retry-After'] == '1'

    def test_inference_failure_hides_internals(self, settings, anchors, face_png):
        class BrokenEngine(FakeFaceEngine):
            def run(self, tensor):
                from facebox.core.exceptions import InferenceError

                raise InferenceError('onnxruntime exploded: secret details')

        with TestClient(create_app(settings, BrokenEngine(anchors.priors))) as client:
            response = client.post('/detect', files=upload(face_png))
        assert response.status_code == 500
        body = response.json()
        assert body['detail'] == 'Inference failed'
        assert 'secret' not in response.text

    def test_unexpected_error_keeps_request_headers(self, settings, anchors, face_png):
        class CrashingEngine(FakeFaceEngine):
            def run(self, tensor):
                raise RuntimeError('boom')

        app = create_app(settings, CrashingEngine(anchors.priors))
        with TestClient(app, raise_server_exceptions=False) as client:
            response = client.post(
                '/detect', files=upload(face_png), headers={'X-Request-ID': 'abc123'}
            )
        assert response.status_code == 500
        assert response.headers['X-Request-ID'] == 'abc123'
        assert response.headers['X-Process-Time'].endswith('ms')

        body = response.json()
        assert body['request_id'] == 'abc123'
        assert body['error_type'] == 'RuntimeError'
        assert body['detail'] == 'Internal server error'
        assert 'boom' not in response.text

    def test_capacity_exceeded(self, settings, anchors, face_png):
        settings.max_request_queue_depth = 1
        gate = threading.Event()
        engine = FakeFaceEngine(anchors.priors, gate=gate)
        with TestClient(create_app(settings, engine)) as client:
            try:
                # a queued job holds the only admission slot while the engine is gated
                assert client.post('/queue', files=upload(face_png)).status_code == 201
                wait_until(lambda: engine.calls == 1)

                response = client.post('/detect', files=upload(face_png))
                assert response.status_code == 503
                assert response.json()['error_type'] == 'CapacityError'
                assert response.json()['retryable'] is True
                assert response.headers['Retry-After'] == '1'
            finally:
                gate.set()


# =============================================================================
# POST /detect/details
# =============================================================================


class TestDetectDetails:
    def test_details(self, client, face_png):
        response = client.post(
            '/detect/details', files=upload(face_png), headers={'X-Request-ID': 'abc'}
        )
        assert response.status_code == 200

        body = response.json()
        assert body['num_detections'] == 1
        assert body['image'] == {'width': 640, 'height': 480}
        assert body['model']['input_width'] == 640
        assert body['model']['input_height'] == 480
        assert set(body['timings_ms']) == {'decode', 'preprocess', 'inference', 'postprocess'}
        assert body['total_time_ms'] >= 0
        assert body['request_id'] == 'abc'


# =============================================================================
# Health
# =============================================================================


class TestHealth:
    def test_root(self, client):
        body = client.get('/').json()
        assert body['service'] == 'facebox'
        assert body['model']['anchors'] == 17640
        assert body['thresholds'] == {'confidence': 0.7, 'iou': 0.5}

    def test_ready(self, client):
        response = client.get('/ready')
        assert response.status_code == 200
        assert response.json() == {'ready': True}

    def test_not_ready(self, client, fake_engine):
        fake_engine.ready = False
        response = client.get('/ready')
        assert response.status_code == 503
        assert response.json() == {'ready': False}
        assert client.get('/health').json()['status'] == 'degraded'

    def test_health(self, client, face_png):
        client.post('/detect', files=upload(face_png))
        body = client.get('/health').json()
        assert body['status'] == 'healthy'
        assert body['services']['scheduler']['successful_requests'] == 1
        assert body['services']['jobs']['pending'] == 0
        assert body['resources']['memory_mb'] > 0


# =============================================================================
# Queue / results
# =============================================================================


def poll_result(client: TestClient, job_id: str, timeout: float = 5.0):
    deadline = time.monotonic() + timeout
    while True:
        response = client.get(f'/result/{job_id}')
        if response.status_code != 202:
            return response
        assert time.monotonic() < deadline, 'job did not finish'
        time.sleep(0.02)


class TestQueue:
    def test_queue_and_fetch(self, client, settings, face_png):
        response = client.post('/queue', files=upload(face_png))
        assert response.status_code == 201

        body = response.json()
        assert body['err'] is None
        job_id = body['id']
        assert str(uuid.UUID(job_id)) == job_id

        result = poll_result(client, job_id)
        assert result.status_code == 200
        detections = result.json()
        assert len(detections) == 1
        assert detections[0]['x_min'] == pytest.approx(100.0, abs=0.01)
        assert (settings.results_dir / f'{job_id}.json').is_file()

    def test_jpeg_queue(self, client):
        data = encode_image(make_image(squares=[(100, 80, 300, 280)]), 'JPEG')
        response = client.post('/queue', files=upload(data, 'image/jpeg', 'face.jpg'))
        assert response.status_code == 201
        assert poll_result(client, response.json()['id']).status_code == 200

    def test_failed_job(self, client):
        response = client.post('/queue', files=upload(b'\x89PNG\r\n\x1a\n broken'))
        job_id = response.json()['id']

        result = poll_result(client, job_id)
        assert result.status_code == 422
        assert result.json()['status'] == 'failed'
        assert result.json()['err']

    def test_requires_multipart(self, client, face_png):
        response = client.post('/queue', content=face_png, headers={'Content-Type': 'image/png'})
        assert response.status_code == 400
        assert response.json()['id'] is None
        assert response.json()['err']

    def test_unsupported_content_type(self, client):
        data = encode_image(make_image(32, 32), 'BMP')
        response = client.post('/queue', files=upload(data, 'image/bmp', 'face.bmp'))
        assert response.status_code == 400
        assert response.json() == {'id': None, 'err': 'content_type not supported'}

    def test_empty_upload(self, client):
        response = client.post('/queue', files=upload(b''))
        assert response.status_code == 400
        assert response.json()['id'] is None

    def test_queue_full(self, settings, anchors, face_png):
        settings.job_queue_size = 1
        gate = threading.Event()
        engine = FakeFaceEngine(anchors.priors, gate=gate)
        with TestClient(create_app(settings, engine)) as client:
            try:
                # first job is taken by the single worker, second one fills the queue
                assert client.post('/queue', files=upload(face_png)).status_code == 201
                wait_until(lambda: engine.calls == 1)
                assert client.post('/queue', files=upload(face_png)).status_code == 201

                response = client.post('/queue', files=upload(face_png))
                assert response.status_code == 503
                assert response.json() == {'id': None, 'err': 'queue is full'}
            finally:
                gate.set()

    def test_unknown_job(self, client):
        assert client.get(f'/result/{uuid.uuid4()}').status_code == 404
        assert client.get('/result/not-a-job-id').status_code == 404


def test_openapi_documents_detection_errors(client):
    schema = client.get('/openapi.json').json()
    responses = schema['paths']['/detect']['post']['responses']
    assert {'200', '400', '413', '503', '504'} <= set(responses)
    assert 'ErrorResponse' in schema['components']['schemas']
