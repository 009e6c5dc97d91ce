"""Performance analysis step."""

from typing import Any, Dict, Optional

from .base import ParsedStepOutput, PipelineStep, build_memory_context, dict_field, list_field, unit_details
from ..dedup import findings_to_issues
from ..models import IterationMemory, PerformanceOptions, StepType, WorkUnit

AREA_SECTIONS = {
    "complexity": """
Algorithm Complexity Analysis:
- Identify time complexity of algorithms (O(n), O(n^2), O(log n), etc.)
- Check for nested loops and recursive calls
- Look for N+1 query problems
- Identify potential infinite loops or recursion
- Check for inefficient data structure usage
""",
    "memory": """
Memory Usage Analysis:
- Check for memory leaks and unreleased resources
- Identify large object allocations
- Look for memory-intensive operations
- Analyze memory patterns in loops
- Identify potential stack overflow risks
""",
    "database": """
Database Performance:
- Analyze SQL queries for optimization opportunities
- Check for missing database indexes
- Look for N+1 query patterns
- Identify full table scans
- Analyze transaction usage and locks
""",
    "network": """
Network Performance:
- Check for unnecessary API calls
- Look for request/response payload optimization
- Identify opportunities for batching requests
- Check for proper HTTP caching headers
""",
    "bundle": """
Bundle Size Analysis:
- Check for large dependencies and unused imports
- Look for code splitting opportunities
- Identify tree shaking opportunities
- Look for lazy loading possibilities
""",
    "rendering": """
Rendering Performance:
- Check for unnecessary re-renders
- Check for layout thrashing
- Identify animation performance issues
- Look for DOM optimization opportunities
""",
}

THRESHOLD_LABELS = {
    "cyclomatic_complexity": "Maximum cyclomatic complexity",
    "memory_usage": "Memory usage threshold",
    "response_time": "Response time threshold",
    "bundle_size": "Bundle size threshold",
}

RESPONSE_FORMAT = """
Please provide your performance analysis in the following JSON format:
{
  "summary": "Brief summary of performance characteristics",
  "issues": [
    {
      "severity": "critical|high|medium|low",
      "category": "complexity|memory|database|network|bundle|rendering",
      "file": "file path",
      "line": line_number,
      "title": "Performance issue title",
      "description": "Detailed description of the issue",
      "impact": "Performance impact explanation",
      "recommendation": "How to optimize"
    }
  ],
  "optimizations": [
    {
      "priority": "high|medium|low",
      "type": "algorithm|cache|database|network|code",
      "description": "Optimization opportunity",
      "effort": "low|medium|high"
    }
  ],
  "metrics": {
    "cyclomaticComplexity": number,
    "memoryUsageMB": number,
    "databaseQueries": number,
    "networkRequests": number
  },
  "performanceScore": number (0-100)
}

Focus on identifying real performance bottlenecks that could impact user experience.
"""


class PerformanceStep(PipelineStep):
    step_type = StepType.PERFORMANCE

    def build_prompt(
        self,
        unit: WorkUnit,
        options: PerformanceOptions,
        memory: Optional[IterationMemory] = None,
        attempt: int = 1,
    ) -> str:
        prompt = (
            "Perform a comprehensive performance analysis of the implemented feature.\n\n"
            f"{unit_details(unit)}\n"
        )

        memory_block = build_memory_context(memory)
        if memory_block:
            prompt += f"{memory_block}\n\n"

        prompt += "Performance Analysis Areas:\n"
        for area in options.metrics:
            prompt += AREA_SECTIONS.get(area, "")

        if options.thresholds:
            prompt += "\nPerformance Thresholds:\n"
            for key, value in options.thresholds.items():
                prompt += f"- {THRESHOLD_LABELS.get(key, key)}: {value}\n"

        prompt += RESPONSE_FORMAT

        if options.enable_profiling:
            prompt += (
                "\nInclude recommendations for performance profiling tools and techniques "
                "that could be used to gather more detailed metrics.\n"
            )
        return prompt

    def parse_data(self, data: Dict[str, Any], options: PerformanceOptions) -> ParsedStepOutput:
        raw_issues = list_field(data, "issues")
        return ParsedStepOutput(
            issues=findings_to_issues(raw_issues, severity_keys=("severity", "impact")),
            metadata={
                "summary": data.get("summary", ""),
                "performance_issues": raw_issues,
                "optimizations": list_field(data, "optimizations"),
                "metrics": dict_field(data, "metrics"),
                "performance_score": data.get("performanceScore", 0),
            },
        )
