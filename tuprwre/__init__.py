# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""tuprwre: install tools inside throwaway containers, run them as shims."""
