import json

import numpy as np
import pytest
from numpy.testing import assert_allclose

from offline_slam.codec import (
    decode_laser, decode_pose, decode_tag_detections, encode_pose, encode_tag_detections,
)
from offline_slam.errors import CorruptRecord, LogSourceError
from offline_slam.models import LogRecord
from offline_slam.source import (
    JSONLLogSource, MemoryLogSource, record_from_mapping, write_jsonl_log,
)


class TestDecodePose:

    def test_from_json_bytes(self):
        raw = json.dumps({"utime": 1500000, "pos": [1, 2, 3], "orientation": [1, 0, 0, 0]}).encode()
        pose = decode_pose(raw)
        assert pose.timestamp == pytest.approx(1.5)
        assert_allclose(pose.position.to_numpy(), [1.0, 2.0, 3.0])
        assert_allclose(pose.orientation.to_numpy(), [1.0, 0.0, 0.0, 0.0])
        assert pose.ground_truth is None
        assert pose.utime == 1500000

    def test_record_timestamp_used_as_fallback(self):
        pose = decode_pose({"position": [0, 0, 0], "orientation": [1, 0, 0, 0]}, timestamp=4.0)
        assert pose.timestamp == 4.0
        assert pose.utime == 4000000

    def test_xyzw_order(self):
        pose = decode_pose({"utime": 0, "pos": [0, 0, 0], "orientation": [0, 0, 0.6, 0.8]},
                           quat_order="xyzw")
        assert_allclose(pose.orientation.to_numpy(), [0.8, 0.0, 0.0, 0.6])

    def test_ground_truth_carried(self):
        pose = decode_pose(encode_pose(2.0, [1, 0, 0], [1, 0, 0, 0], ground_truth=[1.0, 0.1, 0.2]))
        assert_allclose(pose.ground_truth, [1.0, 0.1, 0.2])

    @pytest.mark.parametrize("payload", [
        "not json",
        {"utime": 0, "pos": [0, 0, 0]},
        {"utime": 0, "pos": [0, 0], "orientation": [1, 0, 0, 0]},
        {"utime": 0, "pos": [0, 0, 0], "orientation": [0, 0, 0, 0]},
        {"utime": 0, "pos": [0, "x", 0], "orientation": [1, 0, 0, 0]},
        {"utime": 0, "pos": "123", "orientation": [1, 0, 0, 0]},
        {"utime": 0, "pos": b"123", "orientation": [1, 0, 0, 0]},
        {"pos": [0, 0, 0], "orientation": [1, 0, 0, 0]},
        [1, 2, 3],
    ])
    def test_malformed_raises(self, payload):
        with pytest.raises(CorruptRecord):
            decode_pose(payload)


class TestDecodeTags:

    def test_flat_and_nested_homographies(self):
        H = np.arange(9, dtype=float).reshape(3, 3)
        payload = {"utime": 2000000, "detections": [
            {"id": 1, "H": H.tolist()},
            {"id": 2, "H": H.reshape(-1).tolist()},
        ]}
        tags = decode_tag_detections(payload)
        assert tags.timestamp == pytest.approx(2.0)
        assert [d.id for d in tags.detections] == [1, 2]
        for d in tags.detections:
            assert_allclose(d.homography, H)

    def test_encoder_output_decodes(self):
        H = np.eye(3)
        tags = decode_tag_detections(json.dumps(encode_tag_detections(0.5, [(9, H)])))
        assert tags.detections[0].id == 9
        assert_allclose(tags.detections[0].homography, H)

    def test_empty_detection_list(self):
        assert decode_tag_detections({"utime": 0, "detections": []}).detections == []

    @pytest.mark.parametrize("payload", [
        {"utime": 0},
        {"utime": 0, "detections": [{"id": 1}]},
        {"utime": 0, "detections": [{"id": 1, "H": [[1, 0], [0, 1]]}]},
        {"utime": 0, "detections": [{"id": "a", "H": np.eye(3).tolist()}]},
    ])
    def test_malformed_raises(self, payload):
        with pytest.raises(CorruptRecord):
            decode_tag_detections(payload)


class TestDecodeLaser:

    def test_passthrough(self):
        blob = {"utime": 3000000, "ranges": [1.0, 2.0], "whatever": True}
        scan = decode_laser(blob)
        assert scan.timestamp == pytest.approx(3.0)
        assert scan.data is blob

    def test_opaque_payload_uses_record_time(self):
        scan = decode_laser(b"\x00\x01", timestamp=1.25)
        assert scan.timestamp == 1.25
        assert scan.data == b"\x00\x01"


class TestRecords:

    def test_utime_record(self):
        rec = record_from_mapping({"utime": 2500000, "channel": "POSE", "payload": {}})
        assert rec == LogRecord(2.5, "POSE", {})

    @pytest.mark.parametrize("raw", [
        {"channel": "POSE", "payload": {}},
        {"timestamp": 1.0, "payload": {}},
        {"timestamp": 1.0, "channel": "POSE"},
        {"timestamp": "abc", "channel": "POSE", "payload": {}},
        "POSE",
    ])
    def test_malformed_record(self, raw):
        with pytest.raises(CorruptRecord):
            record_from_mapping(raw)

    def test_memory_source(self):
        src = MemoryLogSource([{"timestamp": 0.0, "channel": "LASER", "payload": {}}])
        assert len(src) == 1
        assert src.read_next().channel == "LASER"
        assert src.read_next() is None


class TestJSONLLogSource:

    def test_roundtrip_through_file(self, tmp_path):
        path = tmp_path / "log.jsonl"
        n = write_jsonl_log([
            LogRecord(0.0, "POSE", {"a": 1}),
            {"timestamp": 1.0, "channel": "LASER", "payload": [1, 2]},
        ], path)
        assert n == 2
        with JSONLLogSource(path) as src:
            records = list(src.iter_records())
        assert [r.channel for r in records] == ["POSE", "LASER"]
        assert records[1].payload == [1, 2]

    def test_corrupt_line_is_consumed(self, tmp_path):
        path = tmp_path / "log.jsonl"
        path.write_text(
            '{"timestamp": 0.0, "channel": "POSE", "payload": {}}\n'
            "\n"
            "{not json\n"
            '{"timestamp": 1.0, "channel": "POSE", "payload": {}}\n',
            encoding="utf-8",
        )
        with JSONLLogSource(path) as src:
            assert src.read_next().timestamp == 0.0
            with pytest.raises(CorruptRecord) as err:
                src.read_next()
            assert err.value.context["line"] == 3
            assert src.read_next().timestamp == 1.0
            assert src.read_next() is None

    def test_missing_file(self, tmp_path):
        with pytest.raises(LogSourceError):
            with JSONLLogSource(tmp_path / "nope.jsonl"):
                pass

    def test_read_before_open(self, tmp_path):
        with pytest.raises(LogSourceError):
            JSONLLogSource(tmp_path / "x.jsonl").read_next()

    def test_close_errors_propagate_from_with_block(self):
        class FailingClose(MemoryLogSource):
            def close(self):
                raise OSError("flush failed")

        with pytest.raises(OSError, match="flush failed"):
            with FailingClose([]):
                pass
