from __future__ import annotations

import json

import pytest

from stratus.services.template_lint import lint_template, parse_template, template_parameters

from tests.fakes import BROKEN_TEMPLATE, COMPUTE_TEMPLATE, NETWORK_TEMPLATE, ROOT_TEMPLATE


def _messages(report):
    return [(issue.severity, issue.path, issue.message) for issue in report.issues]


def _errors(report):
    return [issue.message for issue in report.errors]


@pytest.mark.parametrize("body", [NETWORK_TEMPLATE, COMPUTE_TEMPLATE])
def test_valid_templates_have_no_issues(body):
    report = lint_template(body, name="development/template.yaml")
    assert report.ok
    assert report.issues == []


def test_unresolved_ref_is_an_error():
    report = lint_template(BROKEN_TEMPLATE, name="broken.yaml")

    assert not report.ok
    assert _messages(report) == [
        ("error", "Resources/Instance/Properties/SubnetId", "unresolved reference 'MissingSubnet'")
    ]
    assert report.summary() == "broken.yaml: 1 error(s), 0 warning(s)"


def test_parse_failure_is_a_single_error():
    report = lint_template("Resources: [unclosed", name="bad.yaml")

    assert len(report.issues) == 1
    assert report.issues[0].path == "<root>"
    assert "not valid YAML/JSON" in report.issues[0].message


def test_unknown_short_form_tag_is_a_parse_error():
    report = lint_template("Resources:\n  A:\n    Type: AWS::SNS::Topic\n    Properties:\n      X: !Bogus y\n")
    assert not report.ok
    assert "unknown CloudFormation tag !Bogus" in report.issues[0].message


def test_top_level_must_be_mapping():
    report = lint_template("- just\n- a list\n")
    assert _errors(report) == ["template must be a mapping at the top level"]


def test_schema_errors():
    body = """\
AWSTemplateFormatVersion: "2011-01-01"
Unknown: true
Parameters:
  Name:
    Description: missing type
Resources:
  Topic:
    Type: NotAType
Outputs:
  Arn:
    Description: missing value
"""
    errors = _errors(lint_template(body))
    assert any("'2010-09-09' was expected" in message for message in errors)
    assert any("'Unknown' was unexpected" in message for message in errors)
    assert any("'Type' is a required property" in message for message in errors)
    assert any("'Value' is a required property" in message for message in errors)
    assert any("does not match" in message for message in errors)


def test_empty_resources_is_an_error():
    errors = _errors(lint_template("Resources: {}\n"))
    assert any("should be non-empty" in message or "does not have enough properties" in message
               for message in errors)


def test_json_templates_are_supported():
    body = json.dumps(
        {
            "AWSTemplateFormatVersion": "2010-09-09",
            "Resources": {
                "Bucket": {"Type": "AWS::S3::Bucket"},
                "Policy": {
                    "Type": "AWS::S3::BucketPolicy",
                    "Properties": {"Bucket": {"Ref": "Bucket"}, "PolicyDocument": {}},
                },
            },
        }
    )
    assert lint_template(body).ok


def test_get_att_and_depends_on_targets_must_be_resources():
    body = """\
Resources:
  Queue:
    Type: AWS::SQS::Queue
    DependsOn: [Queue, Missing]
    Properties:
      RedrivePolicy:
        deadLetterTargetArn: !GetAtt Dlq.Arn
"""
    errors = _errors(lint_template(body))
    assert "Fn::GetAtt target 'Dlq' is not a resource" in errors
    assert "resource cannot depend on itself" in errors
    assert "DependsOn target 'Missing' is not a resource" in errors


def test_sub_variables_are_checked():
    body = """\
Parameters:
  Env:
    Type: String
Resources:
  Topic:
    Type: AWS::SNS::Topic
    Properties:
      TopicName: !Sub "${Env}-${AWS::Region}-${Missing}-${!Literal}"
      DisplayName: !Sub
        - "${Local}-${Topic.TopicName}"
        - Local: x
"""
    assert _errors(lint_template(body)) == ["unresolved reference 'Missing'"]


def test_conditions_are_checked():
    body = """\
Parameters:
  Env:
    Type: String
Conditions:
  IsProd: !Equals [!Ref Env, production]
  Both: !And [!Condition IsProd, !Condition Undefined]
  UsesResource: !Equals [!Ref Topic, x]
Resources:
  Topic:
    Type: AWS::SNS::Topic
    Condition: Nope
    Properties:
      DisplayName: !If [IsStaging, a, b]
Outputs:
  Name:
    Condition: AlsoMissing
    Value: !Ref Topic
"""
    errors = _errors(lint_template(body))
    assert "condition 'Undefined' is not defined" in errors
    assert "conditions cannot reference resource 'Topic'" in errors
    assert "condition 'Nope' is not defined" in errors
    assert "condition 'IsStaging' is not defined" in errors
    assert "condition 'AlsoMissing' is not defined" in errors


def test_find_in_map_requires_mapping():
    body = """\
Resources:
  Instance:
    Type: AWS::EC2::Instance
    Properties:
      ImageId: !FindInMap [RegionMap, !Ref "AWS::Region", ami]
"""
    assert _errors(lint_template(body)) == ["mapping 'RegionMap' is not defined"]


def test_resource_cycle_is_reported():
    body = """\
Resources:
  A:
    Type: AWS::SNS::Topic
    Properties:
      DisplayName: !GetAtt B.TopicName
  B:
    Type: AWS::SNS::Topic
    DependsOn: A
"""
    errors = _errors(lint_template(body))
    assert errors == ["circular dependency: A -> B -> A"]


def test_logical_ids_must_be_alphanumeric():
    body = "Resources:\n  my-topic:\n    Type: AWS::SNS::Topic\n"
    assert "logical ID must be alphanumeric" in _errors(lint_template(body))


def test_unused_parameter_is_a_warning():
    body = """\
Parameters:
  Unused:
    Type: String
Resources:
  Topic:
    Type: AWS::SNS::Topic
"""
    report = lint_template(body)
    assert report.ok
    assert [(w.path, w.message) for w in report.warnings] == [
        ("Parameters/Unused", "parameter 'Unused' is never referenced")
    ]


def test_nested_stacks_need_template_url_and_bucket():
    report = lint_template(ROOT_TEMPLATE, name="root.yaml")
    assert report.ok
    assert {w.path for w in report.warnings} == {"Resources/Network", "Resources/Compute"}

    assert lint_template(ROOT_TEMPLATE, has_bucket=True).issues == []

    body = """\
Resources:
  Child:
    Type: AWS::CloudFormation::Stack
  Local:
    Type: AWS::CloudFormation::Stack
    Properties:
      TemplateURL: ./network.yaml
"""
    report = lint_template(body, has_bucket=True)
    assert _errors(report) == ["nested stack requires TemplateURL"]
    assert [w.path for w in report.warnings] == ["Resources/Local/Properties/TemplateURL"]


def test_size_limits():
    padding = "# " + "x" * 60_000 + "\n"
    body = padding + NETWORK_TEMPLATE

    report = lint_template(body)
    assert any("must be deployed from S3" in message for message in _errors(report))
    assert lint_template(body, has_bucket=True).ok

    huge = "# " + "x" * 1_000_001 + "\n" + NETWORK_TEMPLATE
    assert any("the maximum is 1000000" in message for message in _errors(lint_template(huge, has_bucket=True)))


def test_resource_limit():
    resources = "".join(f"  Topic{i}:\n    Type: AWS::SNS::Topic\n" for i in range(501))
    errors = _errors(lint_template("Resources:\n" + resources))
    assert "501 entries exceed the limit of 500" in errors


def test_template_parameters():
    params = template_parameters(COMPUTE_TEMPLATE)
    assert list(params) == ["Environment", "VpcId", "InstanceType"]
    assert params["InstanceType"]["Default"] == "t3.small"


def test_parse_template_keeps_format_version_a_string():
    assert parse_template(NETWORK_TEMPLATE)["AWSTemplateFormatVersion"] == "2010-09-09"
