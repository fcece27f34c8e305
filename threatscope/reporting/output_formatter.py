"""
@file output_formatter.py
@brief Terminal output formatting and color management module

Provides colored, formatted output for the threat scanner with:
- ANSI color codes for terminal output
- Section and header formatting
- Status indicator functions (success, error, warning, info)
- Finding display, worst threat first
- Summary statistics formatting
"""


class Colors:
    """
    @class Colors
    @brief ANSI color code constants for terminal styling
    """
    RESET = "\033[0m"
    BOLD = "\033[1m"

    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    BLUE = "\033[34m"
    MAGENTA = "\033[35m"
    CYAN = "\033[36m"
    WHITE = "\033[37m"


SEVERITY_COLORS = {
    "critical": Colors.MAGENTA,
    "high": Colors.RED,
    "medium": Colors.YELLOW,
    "low": Colors.CYAN,
}


def print_section(title):
    """
    Print a major section header with visual separators.

    Used for major workflow phases like "Scanning web01" or "Summary".
    """
    print(f"\n{Colors.BOLD}{Colors.CYAN}{'=' * 60}{Colors.RESET}")
    print(f"{Colors.BOLD}{Colors.CYAN}{title.center(60)}{Colors.RESET}")
    print(f"{Colors.BOLD}{Colors.CYAN}{'=' * 60}{Colors.RESET}\n")


def print_success(message):
    print(f"{Colors.GREEN}✓ {message}{Colors.RESET}")


def print_info(message):
    print(f"{Colors.BLUE}ℹ {message}{Colors.RESET}")


def print_warning(message):
    print(f"{Colors.YELLOW}⚠ {message}{Colors.RESET}")


def print_error(message):
    print(f"{Colors.RED}✗ {message}{Colors.RESET}")


def format_severity(severity):
    color = SEVERITY_COLORS.get(severity, Colors.WHITE)
    return f"{color}{severity.upper():<8}{Colors.RESET}"


def print_finding(finding):
    """
    Print one finding with its threats, worst first.

    @param finding Finding Ranked finding of one subject

    @details
    Format example:
    @code
    [4f1c2a9b01de] web
      CRITICAL privileged: true
               Container is running in privileged mode, ...
    @endcode
    """
    print(f"{Colors.BOLD}[{finding.subject_id}] {finding.subject_name}{Colors.RESET}")
    for threat in finding.threats:
        print(f"  {format_severity(threat.severity)} {threat.param}: {threat.value}")
        print(f"           {threat.describe}")
        if threat.reference:
            print(f"           {Colors.BLUE}→ {threat.reference}{Colors.RESET}")


def print_report(report):
    if not len(report):
        print_success(f"No threats found on {report.target}")
        return
    for finding in report:
        print_finding(finding)
        print()


def print_stats(total_targets, targets_scanned, total_findings, total_threats):
    """
    Print final processing statistics and summary.

    @param total_targets int Targets in the inventory
    @param targets_scanned int Targets that could be reached
    @param total_findings int Subjects with at least one threat
    @param total_threats int Threats across all findings
    """
    print(f"\n{Colors.BOLD}{Colors.CYAN}{'=' * 60}{Colors.RESET}")
    print(f"{Colors.BOLD}Scan Summary:{Colors.RESET}")
    print(f"  • Total targets: {Colors.BLUE}{total_targets}{Colors.RESET}")
    print(f"  • Targets scanned: {Colors.GREEN}{targets_scanned}{Colors.RESET}")
    print(f"  • Vulnerable subjects: {Colors.YELLOW}{total_findings}{Colors.RESET}")
    print(f"  • Total threats found: {Colors.RED}{total_threats}{Colors.RESET}")
    print(f"{Colors.BOLD}{Colors.CYAN}{'=' * 60}{Colors.RESET}\n")
