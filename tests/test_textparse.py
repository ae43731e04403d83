import math

import pytest

from nodeexp.textparse import MetricType, ParseError, parse_text


def test_untyped_sample_with_labels():
    families = parse_text('dummy_metric{a="x",b="y"} 1\n')
    fam = families["dummy_metric"]
    assert fam.type is MetricType.UNTYPED
    assert fam.help is None
    assert fam.samples[0].labels == {"a": "x", "b": "y"}
    assert fam.samples[0].value == 1.0


def test_help_and_type():
    families = parse_text("# HELP g some help\n# TYPE g gauge\ng 2.5\n")
    fam = families["g"]
    assert fam.help == "some help"
    assert fam.type is MetricType.GAUGE
    assert fam.samples[0].value == 2.5


def test_timestamp_kept():
    fam = parse_text("m 3 1000\n")["m"]
    assert fam.samples[0].timestamp_ms == 1000


def test_special_values_and_escapes():
    fam = parse_text('m{l="a\\"b\\\\c"} +Inf\n')["m"]
    assert fam.samples[0].labels["l"] == 'a"b\\c'
    assert math.isinf(fam.samples[0].value)


def test_histogram_grouping():
    text = (
        "# TYPE h histogram\n"
        'h_bucket{le="1"} 2\n'
        'h_bucket{le="+Inf"} 3\n'
        "h_sum 4\n"
        "h_count 3\n"
    )
    fam = parse_text(text)["h"]
    assert len(fam.samples) == 1
    sample = fam.samples[0]
    assert sample.buckets == {1.0: 2, math.inf: 3}
    assert sample.count == 3
    assert sample.sum == 4.0
    assert sample.labels == {}


def test_summary_grouping_by_labels():
    text = (
        "# TYPE s summary\n"
        's{a="1",quantile="0.5"} 7\n'
        's_sum{a="1"} 10\n'
        's_count{a="1"} 2\n'
        's{a="2",quantile="0.5"} 8\n'
    )
    fam = parse_text(text)["s"]
    assert [s.labels for s in fam.samples] == [{"a": "1"}, {"a": "2"}]
    assert fam.samples[0].quantiles == {0.5: 7.0}
    assert fam.samples[0].count == 2


@pytest.mark.parametrize(
    "text",
    [
        "m\n",
        "m abc\n",
        'm{a="1" 1\n',
        'm{a="1",a="2"} 1\n',
        "# TYPE m gauge\n# TYPE m gauge\n",
        "m 1\n# TYPE m gauge\n",
        "# TYPE m bogus\n",
        "# HELP m a\n# HELP m b\n",
        "# TYPE h histogram\nh 1\n",
        "m 1 notatime\n",
    ],
)
def test_errors(text):
    with pytest.raises(ParseError):
        parse_text(text)