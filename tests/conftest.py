pytest_plugins = [
    "tests.fixtures.aws_fixtures",
    "tests.fixtures.pipeline_fixtures",
]
