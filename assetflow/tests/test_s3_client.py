"""Tests for S3Client and S3Config."""

from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from assetflow.errors import ObjectNotFoundError, TransientStorageError
from assetflow.s3_client import S3Client
from assetflow.storage_config import Location, S3Config


def client_error(code, operation='GetObject'):
    return ClientError({'Error': {'Code': code, 'Message': code}}, operation)


class TestS3Config:
    """Tests for S3Config."""

    def test_from_env(self, monkeypatch):
        """Test loading configuration from the environment."""
        monkeypatch.setenv('S3_ENDPOINT', 'https://minio.example.com:9000')
        monkeypatch.setenv('S3_BUCKET', 'assets')
        monkeypatch.setenv('S3_ACCESS_KEY', 'ak')
        monkeypatch.setenv('S3_SECRET_KEY', 'sk')
        monkeypatch.setenv('S3_DERIVATIVE_BUCKET', 'assets-thumbs')

        config = S3Config.from_env()

        assert config.endpoint == 'https://minio.example.com:9000'
        assert config.bucket_for(Location.STAGING) == 'assets'
        assert config.bucket_for(Location.DERIVATIVE) == 'assets-thumbs'
        assert config.validate() == []

    def test_validate_missing(self):
        """Test that missing values are reported."""
        errors = S3Config(endpoint=None, bucket=None).validate()

        assert any('S3_BUCKET' in e for e in errors)
        assert any('S3_ACCESS_KEY' in e for e in errors)

    def test_default_prefixes(self):
        """Test the single-bucket prefix layout."""
        config = S3Config(endpoint=None, bucket='assets')

        assert config.prefix_for(Location.STAGING) == 'temp'
        assert config.prefix_for(Location.PERMANENT) == 'uploads'
        assert config.prefix_for(Location.DERIVATIVE) == ''


class TestS3Client:
    """Tests for S3Client class."""

    @pytest.fixture
    def config(self):
        """Fixture providing S3 config."""
        return S3Config(
            endpoint='https://test-endpoint.example.com:9000',
            bucket='test-bucket',
            access_key='test-access-key',
            secret_key='test-secret-key',
            region='us-east-1',
        )

    @pytest.fixture
    def client_with_mock(self, config):
        """Fixture providing S3Client with mocked boto3."""
        mock_boto = MagicMock()
        with patch('assetflow.s3_client.boto3.client', return_value=mock_boto):
            client = S3Client(config)
            # Store ref so tests can configure mock behavior
            client._test_mock = mock_boto
            yield client

    def test_object_key(self, client_with_mock):
        """Test that location prefixes are applied."""
        assert client_with_mock.object_key(Location.STAGING, 'product/a.jpg') == 'temp/product/a.jpg'
        assert client_with_mock.object_key(Location.PERMANENT, '/product/a.jpg') == 'uploads/product/a.jpg'
        assert client_with_mock.object_key(Location.DERIVATIVE, 'thumbs/small/a.jpg') == 'thumbs/small/a.jpg'

    def test_location_prefix(self, client_with_mock):
        """Test location prefixes with trailing slash."""
        assert client_with_mock.location_prefix(Location.PERMANENT) == 'uploads/'
        assert client_with_mock.location_prefix(Location.DERIVATIVE) == ''

    def test_read(self, client_with_mock):
        """Test downloading an object."""
        body = MagicMock()
        body.read.return_value = b'data'
        client_with_mock._test_mock.get_object.return_value = {'Body': body}

        assert client_with_mock.read(Location.PERMANENT, 'a.jpg') == b'data'
        client_with_mock._test_mock.get_object.assert_called_once_with(Bucket='test-bucket', Key='uploads/a.jpg')

    def test_read_missing(self, client_with_mock):
        """Test that a missing key raises ObjectNotFoundError."""
        client_with_mock._test_mock.get_object.side_effect = client_error('NoSuchKey')

        with pytest.raises(ObjectNotFoundError):
            client_with_mock.read(Location.PERMANENT, 'a.jpg')

    def test_read_transient(self, client_with_mock):
        """Test that other failures raise TransientStorageError."""
        client_with_mock._test_mock.get_object.side_effect = client_error('SlowDown')

        with pytest.raises(TransientStorageError) as excinfo:
            client_with_mock.read(Location.PERMANENT, 'a.jpg')
        assert not isinstance(excinfo.value, ObjectNotFoundError)

    def test_connection_error(self, client_with_mock):
        """Test that botocore connection errors are wrapped."""
        client_with_mock._test_mock.put_object.side_effect = EndpointConnectionError(endpoint_url='https://x')

        with pytest.raises(TransientStorageError):
            client_with_mock.write(Location.DERIVATIVE, 'thumbs/small/a.jpg', b'x', 'image/jpeg')

    def test_write(self, client_with_mock):
        """Test uploading an object."""
        client_with_mock.write(Location.DERIVATIVE, 'thumbs/small/a.jpg', b'x', 'image/jpeg')

        client_with_mock._test_mock.put_object.assert_called_once_with(
            Bucket='test-bucket', Key='thumbs/small/a.jpg', Body=b'x', ContentType='image/jpeg'
        )

    def test_copy_between_locations(self, client_with_mock):
        """Test server-side copy from staging to permanent."""
        client_with_mock.copy(Location.STAGING, 'p/a.jpg', Location.PERMANENT, 'p/a.jpg')

        client_with_mock._test_mock.copy_object.assert_called_once_with(
            Bucket='test-bucket',
            Key='uploads/p/a.jpg',
            CopySource={'Bucket': 'test-bucket', 'Key': 'temp/p/a.jpg'},
        )

    def test_exists(self, client_with_mock):
        """Test object existence checks."""
        assert client_with_mock.exists(Location.STAGING, 'a.jpg') is True

        client_with_mock._test_mock.head_object.side_effect = client_error('404', 'HeadObject')
        assert client_with_mock.exists(Location.STAGING, 'a.jpg') is False

    def test_delete(self, client_with_mock):
        """Test deleting an object."""
        client_with_mock.delete(Location.STAGING, 'a.jpg')

        client_with_mock._test_mock.delete_object.assert_called_once_with(Bucket='test-bucket', Key='temp/a.jpg')

    def test_signed_write_url(self, client_with_mock):
        """Test presigned PUT generation is bound to the content type."""
        client_with_mock._test_mock.generate_presigned_url.return_value = 'https://signed'

        url = client_with_mock.signed_write_url(Location.STAGING, 'p/a.jpg', 'image/png', 900)

        assert url == 'https://signed'
        client_with_mock._test_mock.generate_presigned_url.assert_called_once_with(
            'put_object',
            Params={'Bucket': 'test-bucket', 'Key': 'temp/p/a.jpg', 'ContentType': 'image/png'},
            ExpiresIn=900,
        )

    def test_public_url(self, client_with_mock, config):
        """Test public URLs with and without a CDN base."""
        assert client_with_mock.public_url(Location.PERMANENT, 'p/my photo.jpg') == \
            'https://test-endpoint.example.com:9000/test-bucket/uploads/p/my%20photo.jpg'

        config.public_base_url = 'https://cdn.example.com/'
        assert client_with_mock.public_url(Location.PERMANENT, 'p/a.jpg') == \
            'https://cdn.example.com/test-bucket/uploads/p/a.jpg'
