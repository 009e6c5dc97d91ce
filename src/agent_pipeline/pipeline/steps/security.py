"""Security review step."""

from typing import Any, Dict, List, Optional

from .base import ParsedStepOutput, PipelineStep, build_memory_context, list_field, unit_details
from ..dedup import findings_to_issues
from ..models import IterationMemory, SecurityOptions, StepType, WorkUnit

SEVERITY_ORDER = {
    "critical": 4,
    "high": 3,
    "medium": 2,
    "low": 1,
    "info": 0,
}

DEFAULT_CHECKLIST = [
    "OWASP Top 10 vulnerabilities (2021)",
    "Injection flaws (SQL, NoSQL, OS command, LDAP)",
    "Broken authentication and session management",
    "Sensitive data exposure and encryption",
    "XML external entities (XXE)",
    "Broken access control",
    "Security misconfiguration",
    "Cross-site scripting (XSS)",
    "Insecure deserialization",
    "Using components with known vulnerabilities",
    "Insufficient logging and monitoring",
    "Input validation and sanitization",
    "Output encoding and escaping",
    "Authentication and authorization checks",
    "Security headers implementation",
    "CORS configuration",
    "CSRF protection",
    "Secure cookie handling",
    "File upload security",
    "API rate limiting",
    "Error handling and information disclosure",
]

DEPENDENCY_CHECKLIST = [
    "Third-party dependency vulnerabilities",
    "Outdated packages with known CVEs",
    "License compliance issues",
]

RESPONSE_FORMAT = """
Please analyze the code and provide your security review in the following JSON format:
{
  "summary": "Brief summary of security posture",
  "vulnerabilities": [
    {
      "severity": "critical|high|medium|low|info",
      "category": "injection|auth|data|config|xss|access|crypto|dependency|other",
      "cwe": "CWE number if applicable",
      "file": "file path",
      "line": line_number,
      "title": "Vulnerability title",
      "description": "Detailed description of the vulnerability",
      "impact": "Potential impact if exploited",
      "recommendation": "How to fix the vulnerability"
    }
  ],
  "recommendations": [
    {
      "priority": "high|medium|low",
      "type": "preventive|detective|corrective",
      "description": "Security improvement recommendation",
      "implementation": "How to implement"
    }
  ],
  "securityScore": number (0-100)
}

Focus on finding real security vulnerabilities that could impact the application.
"""


def filter_by_severity(vulnerabilities: List[Any], min_severity: str) -> List[Dict[str, Any]]:
    """Keep findings at or above ``min_severity``; unknown severities rank as info."""
    min_level = SEVERITY_ORDER.get(min_severity, 0)
    return [
        vuln for vuln in vulnerabilities
        if isinstance(vuln, dict)
        and SEVERITY_ORDER.get(str(vuln.get("severity", "")).lower(), 0) >= min_level
    ]


class SecurityStep(PipelineStep):
    step_type = StepType.SECURITY

    def build_prompt(
        self,
        unit: WorkUnit,
        options: SecurityOptions,
        memory: Optional[IterationMemory] = None,
        attempt: int = 1,
    ) -> str:
        prompt = (
            "Perform a comprehensive security review of the implemented feature.\n\n"
            f"{unit_details(unit)}\n"
        )

        memory_block = build_memory_context(memory)
        if memory_block:
            prompt += f"{memory_block}\n\n"

        prompt += "Security Review Checklist:\n"
        for item in options.checklist or DEFAULT_CHECKLIST:
            prompt += f"- {item}\n"
        if options.check_dependencies:
            for item in DEPENDENCY_CHECKLIST:
                prompt += f"- {item}\n"

        prompt += f"\nMinimum severity level to report: {options.min_severity}\n"
        prompt += RESPONSE_FORMAT

        if not options.exclude_tests:
            prompt += (
                "\nInclude test files in the security review as they might contain "
                "security-related test cases.\n"
            )
        return prompt

    def parse_data(self, data: Dict[str, Any], options: SecurityOptions) -> ParsedStepOutput:
        vulnerabilities = filter_by_severity(list_field(data, "vulnerabilities"), options.min_severity)
        return ParsedStepOutput(
            issues=findings_to_issues(vulnerabilities, summary_keys=("title", "description")),
            metadata={
                "summary": data.get("summary", ""),
                "vulnerabilities": vulnerabilities,
                "recommendations": list_field(data, "recommendations"),
                "security_score": data.get("securityScore", 0),
            },
        )
