# Copyright 2025 Vijaykumar Singh <singhvjd@gmail.com>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Logging level configuration for embedding applications.

Library code never installs handlers; it only logs through module loggers.
Applications call ``configure_logging`` once to pick the engine's verbosity.
"""

import logging

# Third-party loggers that flood DEBUG output
NOISY_LOGGERS = [
    "httpcore",
    "httpx",
    "urllib3",
    "asyncio",
]


def configure_logging(log_level: str = "INFO") -> None:
    """Configure logging levels, silencing noisy third-party loggers.

    Args:
        log_level: Desired level for taskpilot loggers.
            Supported: DEBUG, INFO, WARNING, ERROR, CRITICAL
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    logging.getLogger("taskpilot").setLevel(level)

    for logger_name in NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(logging.WARNING)
