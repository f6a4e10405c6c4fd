"""
Text payloads passed through to AWS verbatim: the CloudWatch agent
configuration and the instance bootstrap script.
"""

from pathlib import Path

import structlog

from errors import ConfigurationError

logger = structlog.get_logger(__name__)

CLOUDWATCH_AGENT_CONFIG = "CWUA_config.json"
USER_DATA_SCRIPT = "EC2_user_data_script.sh"


def load_text_file(asset_dir: Path, file_name: str, description: str) -> list[str]:
    path = Path(asset_dir) / file_name
    if not path.is_file():
        raise ConfigurationError(f"{description} not found: {path}")

    lines = path.read_text(encoding="utf-8").splitlines()
    logger.info("Payload loaded", path=str(path), lines=len(lines))
    return lines


def load_cloudwatch_agent_config(asset_dir: Path) -> str:
    lines = load_text_file(
        asset_dir, CLOUDWATCH_AGENT_CONFIG, "CloudWatch Unified Agent configuration"
    )
    return "\n".join(lines)


def load_user_data_script(asset_dir: Path) -> list[str]:
    return load_text_file(
        asset_dir, USER_DATA_SCRIPT, "User data script for the EC2 launch template"
    )
