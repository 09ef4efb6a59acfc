#--------------------------------------------------------------------------------------#
# Copyright (c) 2026 IMDLink                                                           #
# This file is part of IMDLink.                                                        #
# See README.md for details.                                                           #
#--------------------------------------------------------------------------------------#

NM_TO_ANGSTROM = 10.0  # simulation length unit (nm) to IMD client unit (Angstrom)
ANGSTROM_TO_NM = 1.0 / NM_TO_ANGSTROM

CAL_TO_JOULE = 4.184
# client forces arrive in kcal/(mol Angstrom); the engine works in kJ/(mol nm)
IMD_FORCE_TO_KJ_PER_MOL_NM = CAL_TO_JOULE * NM_TO_ANGSTROM

# Energies leave in kJ/mol as they are; viewers display them in SI units.
KJ_PER_MOL_TO_IMD_ENERGY = 1.0
