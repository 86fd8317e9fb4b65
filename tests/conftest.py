from unittest import mock

import pytest


@pytest.fixture
def cloudwatch():
    """CloudWatch client stub returning no datapoints unless told otherwise."""
    client = mock.Mock()
    client.get_metric_statistics.return_value = {"Datapoints": []}
    return client


@pytest.fixture
def respond(cloudwatch):
    """Map metric names to canned datapoints (or exceptions) for the stub client."""
    responses = {}

    def get_metric_statistics(**kwargs):
        result = responses.get(kwargs["MetricName"], [])
        if isinstance(result, Exception):
            raise result
        return {"Datapoints": result, "Label": kwargs["MetricName"]}

    cloudwatch.get_metric_statistics.side_effect = get_metric_statistics
    return responses
