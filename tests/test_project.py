from klausgate import project


def test_version_default():
    assert project.version() == "dev"


def test_git_sha_default():
    assert project.git_sha() == "unknown"


def test_build_timestamp_default():
    assert project.build_timestamp() == "unknown"