import pytest

from stratus.services.naming import (
    is_valid_stack_name,
    s3_uri,
    s3_url,
    slugify_project,
    stack_name_for,
    template_key,
    template_prefix,
)


def test_stack_name_for():
    assert stack_name_for("acme", "production", "network") == "acme-production-network"


def test_stack_name_for_rejects_invalid_names():
    with pytest.raises(ValueError, match="not a valid CloudFormation stack name"):
        stack_name_for("acme", "production", "x" * 120)
    with pytest.raises(ValueError):
        stack_name_for("acme_corp", "dev", "network")


@pytest.mark.parametrize(
    "value,expected",
    [
        ("acme", "acme"),
        ("My Project", "My-Project"),
        ("__svc__", "svc"),
        ("1password", "p-1password"),
        ("!!!", "stratus"),
    ],
)
def test_slugify_project(value, expected):
    assert slugify_project(value) == expected
    assert is_valid_stack_name(f"{slugify_project(value)}-dev-root")


def test_template_keys():
    assert template_prefix("staging") == "infrastructure/staging/"
    assert template_key("staging", "root.yaml") == "infrastructure/staging/root.yaml"
    assert template_key("staging", "root.yaml", root="/cfn/") == "cfn/staging/root.yaml"
    assert template_prefix("staging", root="") == "staging/"
    with pytest.raises(ValueError):
        template_key("staging", "../secrets.yaml")


def test_s3_urls():
    assert s3_url("b", "k/x.yaml", region=None) == "https://b.s3.amazonaws.com/k/x.yaml"
    assert s3_url("b", "k/x.yaml", region="us-east-1") == "https://b.s3.amazonaws.com/k/x.yaml"
    assert s3_url("b", "k/x.yaml", region="eu-west-1") == "https://b.s3.eu-west-1.amazonaws.com/k/x.yaml"
    assert s3_uri("b", "k") == "s3://b/k"
