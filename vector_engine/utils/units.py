MM_PER_INCH = 25.4
PT_PER_INCH = 72.0


def mm_to_pt(mm: float) -> float:
    return float(mm) * PT_PER_INCH / MM_PER_INCH


def pt_to_mm(pt: float) -> float:
    return float(pt) * MM_PER_INCH / PT_PER_INCH
