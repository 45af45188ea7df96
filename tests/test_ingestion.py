"""
Tests for Output Ingestion
"""

import base64
import pytest
import requests
from unittest.mock import MagicMock
from botocore.exceptions import EndpointConnectionError

from genledger.errors import EmptyPayload, IngestionError, StorageUploadError, ValidationError
from genledger.generation.ingestion import OutputIngestion, detect_format, gcs_public_url
from genledger.generation.storage import ObjectStorage

from conftest import JPEG_BYTES, MP4_BYTES, PNG_BYTES


def fetched(content):
    response = MagicMock()
    response.content = content
    response.raise_for_status.return_value = None
    return response


class TestDetection:

    def test_known_signatures(self):
        assert detect_format(PNG_BYTES, "image") == ("png", "image/png", True)
        assert detect_format(JPEG_BYTES, "image") == ("jpg", "image/jpeg", True)
        assert detect_format(b"RIFF\x00\x00\x00\x00WEBPVP8 ", "image") == ("webp", "image/webp", True)
        assert detect_format(MP4_BYTES, "video") == ("mp4", "video/mp4", True)
        assert detect_format(b"\x1a\x45\xdf\xa3" + b"\x00" * 8, "video") == ("webm", "video/webm", True)

    def test_unknown_falls_back_to_default(self):
        assert detect_format(b"hello world", "image") == ("png", "image/png", False)
        assert detect_format(b"hello world", "video") == ("mp4", "video/mp4", False)

    def test_gcs_mapping(self):
        assert gcs_public_url("gs://bucket/path/v.mp4") == "https://storage.googleapis.com/bucket/path/v.mp4"


class TestIngest:

    def test_data_uri(self, ingestion, s3_client, png_data_uri):
        stored = ingestion.ingest(png_data_uri, "image", "user-1", "gen-1")

        s3_client.put_object.assert_called_once_with(
            Bucket="images",
            Key="user-1/gen-1.png",
            Body=PNG_BYTES,
            ContentType="image/png",
        )
        assert stored.url == "https://cdn.example.com/images/user-1/gen-1.png"
        assert stored.size == len(PNG_BYTES)

    def test_raw_base64_video(self, ingestion, s3_client, mp4_base64):
        stored = ingestion.ingest(mp4_base64, "video", "user-1", "gen-2")

        assert stored.bucket == "videos"
        assert stored.key == "user-1/gen-2.mp4"
        assert stored.content_type == "video/mp4"

    def test_remote_url_fetched(self, ingestion, s3_client):
        ingestion.session.get.return_value = fetched(JPEG_BYTES)

        stored = ingestion.ingest("https://provider.example.com/out.jpg", "image", "user-1", "gen-3")

        ingestion.session.get.assert_called_once()
        assert ingestion.session.get.call_args[0][0] == "https://provider.example.com/out.jpg"
        assert stored.key == "user-1/gen-3.jpg"

    def test_gs_uri_fetched_over_https(self, ingestion):
        ingestion.session.get.return_value = fetched(MP4_BYTES)

        ingestion.ingest("gs://veo-out/op/sample.mp4", "video", "user-1", "gen-4")

        assert ingestion.session.get.call_args[0][0] == "https://storage.googleapis.com/veo-out/op/sample.mp4"

    def test_signature_mismatch_still_uploads(self, ingestion, s3_client):
        raw = base64.b64encode(b"not really an image").decode()

        stored = ingestion.ingest(raw, "image", "user-1", "gen-5")

        assert stored.key == "user-1/gen-5.png"
        s3_client.put_object.assert_called_once()

    @pytest.mark.parametrize("raw", ["", "data:image/png;base64,"])
    def test_empty_payload(self, ingestion, s3_client, raw):
        with pytest.raises(EmptyPayload):
            ingestion.ingest(raw, "image", "user-1", "gen-6")
        s3_client.put_object.assert_not_called()

    def test_invalid_base64(self, ingestion):
        with pytest.raises(IngestionError):
            ingestion.ingest("@@not base64@@", "image", "user-1", "gen-7")

    def test_fetch_failure(self, ingestion):
        ingestion.session.get.side_effect = requests.exceptions.ConnectionError("refused")

        with pytest.raises(IngestionError):
            ingestion.ingest("https://provider.example.com/out.png", "image", "user-1", "gen-8")

    def test_storage_failure(self, ingestion, s3_client, png_data_uri):
        s3_client.put_object.side_effect = EndpointConnectionError(endpoint_url="https://s3.example.com")

        with pytest.raises(StorageUploadError):
            ingestion.ingest(png_data_uri, "image", "user-1", "gen-9")

    def test_unknown_media_kind(self, ingestion, png_data_uri):
        with pytest.raises(ValidationError):
            ingestion.ingest(png_data_uri, "audio", "user-1", "gen-10")


class TestStorage:

    def test_public_url_variants(self):
        assert ObjectStorage(public_base_url="https://cdn.example.com/").public_url("images", "a.png") == \
            "https://cdn.example.com/images/a.png"
        assert ObjectStorage(endpoint_url="http://minio:9000").public_url("images", "a.png") == \
            "http://minio:9000/images/a.png"
        assert ObjectStorage().public_url("images", "a.png") == "https://images.s3.amazonaws.com/a.png"

    def test_is_hosted(self):
        storage = ObjectStorage(public_base_url="https://cdn.example.com")
        assert storage.is_hosted("https://cdn.example.com/images/a.png")
        assert not storage.is_hosted("https://cdn.example.com.evil.test/a.png")
        assert not ObjectStorage().is_hosted("https://cdn.example.com/images/a.png")

    def test_from_settings_uses_buckets(self):
        from genledger.config import Settings

        ingestion = OutputIngestion.from_settings(Settings(storage_video_bucket="clips"))
        assert ingestion.buckets == {"image": "images", "video": "clips"}
