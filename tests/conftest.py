import io
import os
import pytest
from moto import mock_aws
from fastapi.testclient import TestClient
from PIL import Image

# Set test environment variables BEFORE importing app modules
os.environ["AWS_ACCESS_KEY_ID"] = "testing"
os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
os.environ["AWS_SECURITY_TOKEN"] = "testing"
os.environ["AWS_SESSION_TOKEN"] = "testing"
os.environ["AWS_REGION"] = "us-east-1"
os.environ["AWS_DEFAULT_REGION"] = "us-east-1"
os.environ["S3_BUCKET"] = "image-vault-bucket"
os.environ["DYNAMODB_TABLE"] = "Images"
os.environ["DEPLOYMENT_MODE"] = "server"
# Clear endpoints and keys so moto mocks and the heuristic analyzer are used
os.environ.pop("AWS_ENDPOINT_URL", None)
os.environ.pop("EXTERNAL_ENDPOINT", None)
os.environ.pop("GEMINI_API_KEY", None)

from image_vault.analysis.models import AnalysisResult
from image_vault.main import app


def make_png_bytes(color="red", size=(10, 10)):
    """Generate a simple valid PNG in-memory."""
    img = Image.new("RGB", size, color=color)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


class StubAnalysis:
    """Stands in for AnalysisService with a fixed result."""
    def __init__(self, description="d", tags=("red", "square")):
        self.result = AnalysisResult(description=description, tags=list(tags))
        self.calls = []

    async def analyze(self, image_bytes, mime_type=None, file_name=None, file_size=None):
        self.calls.append({"bytes": image_bytes, "mime_type": mime_type, "file_name": file_name})
        return self.result


@pytest.fixture(scope="function")
def aws_credentials():
    """Mocked AWS Credentials for moto."""
    os.environ["AWS_ACCESS_KEY_ID"] = "testing"
    os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
    os.environ["AWS_SECURITY_TOKEN"] = "testing"
    os.environ["AWS_SESSION_TOKEN"] = "testing"


@pytest.fixture(scope="function")
def test_client(aws_credentials):
    # The lifespan creates the bucket and table inside the moto context
    with mock_aws():
        with TestClient(app) as client:
            yield client


@pytest.fixture
def png_bytes():
    return make_png_bytes()
