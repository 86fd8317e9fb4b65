from unittest import mock

import pytest
from botocore.exceptions import NoRegionError, ProfileNotFound

from aws_es_metrics import ConnectionSetupError, prepare


@pytest.fixture
def session_cls():
    with mock.patch("aws_es_metrics.boto3.session.Session") as session_cls:
        session_cls.return_value.region_name = None
        yield session_cls


@pytest.fixture
def region_fetcher():
    with mock.patch("aws_es_metrics.InstanceMetadataRegionFetcher") as fetcher_cls:
        fetcher_cls.return_value.retrieve_region.return_value = "ap-northeast-1"
        yield fetcher_cls.return_value


def test_static_credentials_and_region(session_cls, region_fetcher):
    client = prepare("us-west-2", "AKIAEXAMPLE", "secret")

    session_cls.assert_called_once_with(aws_access_key_id="AKIAEXAMPLE", aws_secret_access_key="secret")
    session_cls.return_value.client.assert_called_once_with("cloudwatch", region_name="us-west-2")
    assert client is session_cls.return_value.client.return_value
    region_fetcher.retrieve_region.assert_not_called()


@pytest.mark.parametrize("access_key_id, secret_access_key", [("", ""), ("AKIAEXAMPLE", ""), ("", "secret")])
def test_partial_credentials_use_default_chain(session_cls, region_fetcher, access_key_id, secret_access_key):
    prepare("us-west-2", access_key_id, secret_access_key)

    session_cls.assert_called_once_with()


def test_session_region_used_when_region_empty(session_cls, region_fetcher):
    session_cls.return_value.region_name = "eu-west-1"

    prepare("", "", "")

    session_cls.return_value.client.assert_called_once_with("cloudwatch", region_name="eu-west-1")
    region_fetcher.retrieve_region.assert_not_called()


def test_instance_region_used_as_last_resort(session_cls, region_fetcher):
    prepare()

    session_cls.return_value.client.assert_called_once_with("cloudwatch", region_name="ap-northeast-1")


def test_unresolvable_region_is_setup_error(session_cls, region_fetcher):
    region_fetcher.retrieve_region.return_value = None
    session_cls.return_value.client.side_effect = NoRegionError()

    with pytest.raises(ConnectionSetupError) as excinfo:
        prepare()

    assert isinstance(excinfo.value.__cause__, NoRegionError)


def test_bad_profile_is_setup_error(session_cls, region_fetcher):
    session_cls.side_effect = ProfileNotFound(profile="missing")

    with pytest.raises(ConnectionSetupError, match="missing"):
        prepare("us-east-1")
