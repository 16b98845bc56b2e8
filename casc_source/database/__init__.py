"""External collaborators of the CASC client: TACT keys and the listfile."""

from casc_source.database.listfile import CSVListfile, ListfileProvider
from casc_source.database.tact_keys import TACTKey, TACTKeyRegistry

__all__ = ["CSVListfile", "ListfileProvider", "TACTKey", "TACTKeyRegistry"]
