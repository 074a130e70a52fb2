"""Centralized style definitions for the Chronos report."""


# Unified Color Palette
class Colors:
    # Dark Dashboard Base Colors
    BG_PRIMARY = "#0F172A"      # Main background
    BG_PANELS = "#1E293B"       # Panel background
    BG_TABLES = "#0B1220"       # Dark slate for tables
    BG_ROW_HOVER = "#1E3A5F"    # Highlighted table row

    # Text Colors
    TEXT_PRIMARY = "#E2E8F0"    # Primary text
    TEXT_SECONDARY = "#94A3B8"  # Secondary text

    # Accent Colors
    ACCENT_BLUE = "#3B82F6"     # Primary accent blue
    ACCENT_CYAN = "#00FFFF"     # Headings

    # Status Colors
    SUCCESS = "#10B981"         # Success green
    WARNING = "#F59E0B"         # Warning amber
    ERROR = "#EF4444"           # Error red

    # Border Colors
    BORDER_SUBTLE = "#334155"   # Subtle borders
    BORDER_ACCENT = "#475569"   # Accent borders


# One badge colour per source artifact label
SOURCE_COLORS = {
    "MFT": Colors.ACCENT_BLUE,
    "Security log": Colors.ERROR,
    "System log": Colors.WARNING,
    "Prefetch": Colors.SUCCESS,
}


class ReportStyles:
    """Stylesheet of the standalone HTML report."""

    @staticmethod
    def stylesheet() -> str:
        source_rules = "\n".join(
            f".source-{label.lower().replace(' ', '-')} {{ border-left: 4px solid {color}; }}"
            for label, color in SOURCE_COLORS.items()
        )
        return f"""
        body {{
            margin: 0;
            background-color: {Colors.BG_PRIMARY};
            color: {Colors.TEXT_PRIMARY};
            font: 14px/1.5 "Segoe UI", Roboto, Helvetica, Arial, sans-serif;
        }}
        .container {{ width: min(1400px, 95%); margin: 24px auto; }}
        h1, h2 {{ color: {Colors.ACCENT_CYAN}; font-weight: 600; margin: 0.4rem 0 0.8rem; }}
        .card {{
            background-color: {Colors.BG_PANELS};
            border: 1px solid {Colors.BORDER_SUBTLE};
            border-radius: 8px;
            padding: 14px 18px;
            margin: 12px 0;
        }}
        .muted {{ color: {Colors.TEXT_SECONDARY}; }}
        .failed {{ color: {Colors.ERROR}; }}
        .note {{ color: {Colors.WARNING}; }}
        table {{ width: 100%; border-collapse: collapse; background-color: {Colors.BG_TABLES}; }}
        th, td {{ border-bottom: 1px solid {Colors.BORDER_SUBTLE}; padding: 6px 8px; text-align: left; vertical-align: top; }}
        th {{
            background-color: {Colors.BG_PANELS};
            color: {Colors.TEXT_SECONDARY};
            position: sticky;
            top: 0;
            cursor: pointer;
            user-select: none;
        }}
        th:hover {{ color: {Colors.ACCENT_BLUE}; }}
        tbody tr:hover {{ background-color: {Colors.BG_ROW_HOVER}; }}
        td.timestamp {{ font-family: Consolas, "Courier New", monospace; white-space: nowrap; }}
        .count {{ font-weight: 700; color: {Colors.TEXT_PRIMARY}; }}
        #filter {{
            width: 100%;
            box-sizing: border-box;
            padding: 6px 8px;
            margin-bottom: 8px;
            background-color: {Colors.BG_TABLES};
            color: {Colors.TEXT_PRIMARY};
            border: 1px solid {Colors.BORDER_ACCENT};
            border-radius: 4px;
        }}
        {source_rules}
        """
