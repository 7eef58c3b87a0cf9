# SPDX-FileCopyrightText: 2024-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

__version__ = '0.1.0'

__license__ = 'AGPLv3+'

__author__ = 'Dan Pascu'
__copyright__ = f'Copyright 2024-present {__author__}'
