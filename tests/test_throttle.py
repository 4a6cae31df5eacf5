import pytest
from azure.core.exceptions import HttpResponseError

from azure_collector.entities import RateLimitSample
from azure_collector.throttle import (
    REMAINING_READS_HEADER,
    REMAINING_RESOURCE_HEADER,
    ThrottleAwarePoller,
    header_values,
    parse_measured_calls,
    parse_number,
    parse_rate_limit_header,
    remaining_from_header,
)

from .conftest import fake_request, throttling_body

SAMPLE_HEADER = "Microsoft.Compute/DeleteVMScaleSet3Min;107,Microsoft.Compute/VmssQueuedVMOperations;4720"


class TestParseRateLimitHeader:
    def test_parses_every_policy(self):
        result = parse_rate_limit_header(SAMPLE_HEADER)

        assert result.errors == 0
        assert result.samples == [
            RateLimitSample("Microsoft.Compute/DeleteVMScaleSet3Min", 107.0),
            RateLimitSample("Microsoft.Compute/VmssQueuedVMOperations", 4720.0),
        ]

    def test_malformed_pair_is_skipped_and_counted(self):
        result = parse_rate_limit_header("BadPolicyNoSemicolon,Microsoft.Compute/GetVMScaleSet3Min;12")

        assert result.errors == 1
        assert result.samples == [RateLimitSample("Microsoft.Compute/GetVMScaleSet3Min", 12.0)]

    @pytest.mark.parametrize(
        "value", ["Policy;abc", "Policy;", ";10", "Policy;nan", "Policy;inf", "Policy;1_000", "Policy;0x10", ""]
    )
    def test_rejects_bad_pairs(self, value):
        result = parse_rate_limit_header(value)

        assert result.samples == []
        assert result.errors == 1

    def test_tolerates_whitespace(self):
        result = parse_rate_limit_header(" A;1 , B ; 2 ")

        assert [(s.policy_name, s.remaining_count) for s in result.samples] == [("A", 1.0), ("B", 2.0)]


class TestParseNumber:
    @pytest.mark.parametrize(
        "value, expected", [("12", 12.0), (" 12 ", 12.0), ("1e3", 1000.0), ("-0.5", -0.5), (".5", 0.5)]
    )
    def test_accepts_decimal_numbers(self, value, expected):
        assert parse_number(value) == expected

    @pytest.mark.parametrize("value", ["1_000", "inf", "-Infinity", "nan", "0x10", "1e", "", "12 apples"])
    def test_rejects_everything_else(self, value):
        assert parse_number(value) is None


class TestHeaderHelpers:
    def test_header_values_handles_missing_and_lists(self):
        assert header_values(None, "x") == []
        assert header_values({}, "x") == []
        assert header_values({"x": ["a", "b"]}, "x") == ["a", "b"]
        assert header_values({"x": 3}, "x") == ["3"]

    def test_remaining_from_header(self):
        assert remaining_from_header({REMAINING_READS_HEADER: "11999"}, REMAINING_READS_HEADER) == 11999.0
        assert remaining_from_header({REMAINING_READS_HEADER: "lots"}, REMAINING_READS_HEADER) is None
        assert remaining_from_header({REMAINING_READS_HEADER: "1_199"}, REMAINING_READS_HEADER) is None
        assert remaining_from_header({REMAINING_READS_HEADER: "inf"}, REMAINING_READS_HEADER) is None
        assert remaining_from_header({}, REMAINING_READS_HEADER) is None


class TestParseMeasuredCalls:
    def test_reads_operation_groups(self):
        body = throttling_body({"operationGroup": "X", "measuredRequestCount": 42})

        assert parse_measured_calls(body) == [RateLimitSample("X", 42.0)]

    def test_skips_bad_details_only(self):
        body = (
            '{"error": {"details": ['
            '{"message": "not json"},'
            '{"message": "{\\"operationGroup\\": \\"Y\\", \\"measuredRequestCount\\": 7}"},'
            '{"other": 1}'
            "]}}"
        )

        assert parse_measured_calls(body) == [RateLimitSample("Y", 7.0)]

    @pytest.mark.parametrize("body", [None, "", "{", '{"error": {}}', '{"error": {"details": "x"}}', "[]"])
    def test_unusable_body_yields_nothing(self, body):
        assert parse_measured_calls(body) == []


class TestThrottleAwarePoller:
    def test_collects_records_and_headers_of_last_page(self):
        request = fake_request(pages=[[1, 2], [3]], headers={REMAINING_RESOURCE_HEADER: SAMPLE_HEADER})

        result = ThrottleAwarePoller().poll(object(), request)

        assert result.records == [1, 2, 3]
        assert result.header_found
        assert len(result.remaining) == 2
        assert result.parse_errors == 0
        assert not result.throttled
        assert not result.not_found

    def test_not_found_is_an_empty_result(self):
        request = fake_request(status_code=404, headers={REMAINING_RESOURCE_HEADER: "Policy;5"})

        result = ThrottleAwarePoller().poll(object(), request)

        assert result.not_found
        assert result.records == []
        assert result.remaining == [RateLimitSample("Policy", 5.0)]

    def test_throttled_response_reports_measured_calls(self):
        request = fake_request(
            status_code=429,
            headers={REMAINING_RESOURCE_HEADER: "Policy;0"},
            body=throttling_body({"operationGroup": "X", "measuredRequestCount": 42}),
        )

        result = ThrottleAwarePoller().poll(object(), request)

        assert result.throttled
        assert result.records == []
        assert result.measured == [RateLimitSample("X", 42.0)]
        assert result.remaining == [RateLimitSample("Policy", 0.0)]

    def test_throttled_response_with_garbage_body(self):
        request = fake_request(status_code=429, body="<html>busy</html>")

        result = ThrottleAwarePoller().poll(object(), request)

        assert result.throttled
        assert result.measured == []
        assert not result.header_found

    def test_other_http_errors_propagate(self):
        request = fake_request(status_code=500)

        with pytest.raises(HttpResponseError):
            ThrottleAwarePoller().poll(object(), request)

    def test_without_header_name_only_raw_headers_are_kept(self):
        request = fake_request(pages=[["rg"]], headers={REMAINING_READS_HEADER: "11999"})

        result = ThrottleAwarePoller(header_name=None).poll(object(), request)

        assert result.records == ["rg"]
        assert result.headers == {REMAINING_READS_HEADER: "11999"}
        assert result.remaining == []
        assert not result.header_found

    def test_missing_header_is_reported(self):
        request = fake_request(pages=[[1]], headers={})

        result = ThrottleAwarePoller().poll(object(), request)

        assert not result.header_found
        assert result.parse_errors == 0
